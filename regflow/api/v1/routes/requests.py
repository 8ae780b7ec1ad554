"""Project-creation request API endpoints."""

from typing import List, Optional, Union
import structlog
from fastapi import APIRouter, Depends, Header, Query, Request, Response, status

from regflow.api.v1.dependencies import get_operator, get_request_controller
from regflow.core import RequestController
from regflow.models.schemas import (
    ApprovalStatus,
    RequestCreate,
    RequestQuery,
    RequestResponse,
)

router = APIRouter(prefix="/api/v2.0/requests", tags=["requests"])
logger = structlog.get_logger()


def parse_request_name_or_id(value: str, is_resource_name: bool = False) -> Union[int, str]:
    """
    Interpret a path segment as a request id or a request name.

    Numeric segments are ids unless the caller marks them as resource names.
    """
    if is_resource_name:
        return value
    try:
        return int(value)
    except ValueError:
        return value


def _is_resource_name(x_is_resource_name: Optional[str]) -> bool:
    return (x_is_resource_name or "").strip().lower() == "true"


def _to_response(request) -> RequestResponse:
    data = request.to_dict()
    data.pop("deleted", None)
    return RequestResponse(**data)


def build_page_links(http_request: Request, total: int, page: int, page_size: int) -> str:
    """
    Pagination links for the Link header, e.g.
    `</api/v2.0/requests?page=1&page_size=10>; rel="prev" , <...>; rel="next"`.

    Other query parameters are kept. Empty when there is no other page.
    """
    if page_size <= 0:
        return ""

    links = []
    if page > 1:
        links.append((page - 1, "prev"))
    if page * page_size < total:
        links.append((page + 1, "next"))

    rendered = []
    for target, rel in links:
        url = http_request.url.include_query_params(page=target, page_size=page_size)
        rendered.append(f'<{url.path}?{url.query}>; rel="{rel}"')
    return " , ".join(rendered)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_request(
    body: RequestCreate,
    response: Response,
    controller: RequestController = Depends(get_request_controller),
):
    """Create a project-creation request"""
    request_id = await controller.create(body.name, body.owner_id, body.owner_name)
    response.headers["Location"] = f"{router.prefix}/{request_id}"
    return {"request_id": request_id}


@router.head("")
async def head_request(
    request_name: str = Query(...),
    controller: RequestController = Depends(get_request_controller),
):
    """Check whether a request with the given name exists"""
    exists = await controller.exists(request_name)
    return Response(status_code=status.HTTP_200_OK if exists else status.HTTP_404_NOT_FOUND)


@router.get("", response_model=List[RequestResponse])
async def list_requests(
    http_request: Request,
    response: Response,
    name: Optional[str] = None,
    owner: Optional[str] = None,
    owner_id: Optional[int] = None,
    is_approved: Optional[ApprovalStatus] = None,
    sort: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=0, le=100),
    controller: RequestController = Depends(get_request_controller),
):
    """List requests with filters, sorting and paging"""
    query = RequestQuery(
        name=name,
        owner=owner,
        owner_id=owner_id,
        is_approved=is_approved,
        sort=sort,
        page=page,
        page_size=page_size,
    )
    total = await controller.count(query)
    requests = await controller.list(query, with_owner=True)

    response.headers["X-Total-Count"] = str(total)
    link = build_page_links(http_request, total, page, page_size)
    if link:
        response.headers["Link"] = link
    return [_to_response(r) for r in requests]


@router.get("/{name_or_id}", response_model=RequestResponse)
async def get_request(
    name_or_id: str,
    x_is_resource_name: Optional[str] = Header(default=None),
    controller: RequestController = Depends(get_request_controller),
):
    """Get a request by id or name"""
    key = parse_request_name_or_id(name_or_id, _is_resource_name(x_is_resource_name))
    request = await controller.get(key, with_owner=True)
    return _to_response(request)


@router.delete("/{name_or_id}")
async def delete_request(
    name_or_id: str,
    x_is_resource_name: Optional[str] = Header(default=None),
    controller: RequestController = Depends(get_request_controller),
):
    """Soft delete a request, freeing its name"""
    key = parse_request_name_or_id(name_or_id, _is_resource_name(x_is_resource_name))
    request = await controller.get(key)
    await controller.delete(request.request_id)
    return Response(status_code=status.HTTP_200_OK)


@router.put("/{name_or_id}/approve", response_model=RequestResponse)
async def approve_request(
    name_or_id: str,
    x_is_resource_name: Optional[str] = Header(default=None),
    operator: str = Depends(get_operator),
    controller: RequestController = Depends(get_request_controller),
):
    """Approve a pending request and provision its project"""
    key = parse_request_name_or_id(name_or_id, _is_resource_name(x_is_resource_name))
    request = await controller.get(key)

    logger.info("approve_requested", request_id=request.request_id, operator=operator)
    decided = await controller.approve(request, operator)
    return _to_response(decided)


@router.put("/{name_or_id}/reject", response_model=RequestResponse)
async def reject_request(
    name_or_id: str,
    x_is_resource_name: Optional[str] = Header(default=None),
    operator: str = Depends(get_operator),
    controller: RequestController = Depends(get_request_controller),
):
    """Reject a pending request"""
    key = parse_request_name_or_id(name_or_id, _is_resource_name(x_is_resource_name))
    request = await controller.get(key)

    logger.info("reject_requested", request_id=request.request_id, operator=operator)
    decided = await controller.reject(request, operator)
    return _to_response(decided)
