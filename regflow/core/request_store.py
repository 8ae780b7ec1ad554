"""
Persistence for project-creation requests.
Validates new requests and maps conflicts and missing rows to the error taxonomy.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select, update, func
from datetime import datetime
from typing import List, Optional
import re
import structlog

from regflow.core.errors import ValidationError, ConflictError, NotFoundError
from regflow.models.orm import Request, User
from regflow.models.schemas import ApprovalStatus, RequestQuery

logger = structlog.get_logger()

REQUEST_NAME_MIN_LEN = 1
REQUEST_NAME_MAX_LEN = 255
VALID_REQUEST_NAME = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*$")

SORT_COLUMNS = {
    "name": Request.name,
    "creation_time": Request.creation_time,
    "update_time": Request.update_time,
    "request_id": Request.request_id,
}


def truncate(value: str, suffix: str, max_len: int) -> str:
    """Append ``suffix``, cutting ``value`` so the result fits in ``max_len``"""
    if len(value) + len(suffix) <= max_len:
        return value + suffix
    return value[: max_len - len(suffix)] + suffix


def validate_request(name: str, owner_id: int):
    """
    Raises:
        ValidationError: If the owner is missing or the name is not allowed
    """
    if owner_id is None or owner_id <= 0:
        raise ValidationError(f"Owner is missing when creating request {name}")

    if name is None or not (REQUEST_NAME_MIN_LEN <= len(name) <= REQUEST_NAME_MAX_LEN):
        raise ValidationError(
            f"Request name {name} is illegal in length. "
            f"(greater than {REQUEST_NAME_MAX_LEN} or less than {REQUEST_NAME_MIN_LEN})"
        )

    if not VALID_REQUEST_NAME.match(name):
        raise ValidationError("request name is not in lower case or contains illegal characters")


class RequestStore:
    """
    Data access for the ``request`` table.

    Every read path filters out tombstoned rows unless told otherwise.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, name: str, owner_id: int, owner_name: str = None) -> Request:
        validate_request(name, owner_id)

        now = datetime.now().timestamp()
        request = Request(
            name=name,
            owner_id=owner_id,
            owner_name=owner_name,
            is_approved=ApprovalStatus.NOT_DETERMINED.value,
            creation_time=now,
            update_time=now,
            deleted=False,
        )
        self.db.add(request)

        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"The request named {name} already exists")

        await self.db.commit()

        logger.info("request_created", request_id=request.request_id, name=name, owner_id=owner_id)
        return request

    async def get(self, request_id: int, include_deleted: bool = False) -> Request:
        """
        Get request by id.

        Tombstones are only returned when ``include_deleted`` is set.
        """
        stmt = select(Request).where(Request.request_id == request_id)
        if not include_deleted:
            stmt = stmt.where(Request.deleted.is_(False))

        result = await self.db.execute(stmt)
        request = result.scalar_one_or_none()
        if not request:
            raise NotFoundError(f"request {request_id} not found")
        return request

    async def get_by_name(self, name: str) -> Request:
        result = await self.db.execute(
            select(Request).where(Request.name == name, Request.deleted.is_(False))
        )
        request = result.scalar_one_or_none()
        if not request:
            raise NotFoundError(f"request {name} not found")
        return request

    def _filtered(self, stmt, query: Optional[RequestQuery]):
        stmt = stmt.where(Request.deleted.is_(False))
        if query is None:
            return stmt

        if query.name:
            stmt = stmt.where(Request.name.contains(query.name, autoescape=True))
        if query.names:
            stmt = stmt.where(Request.name.in_(query.names))
        if query.owner_id is not None:
            stmt = stmt.where(Request.owner_id == query.owner_id)
        if query.owner:
            stmt = stmt.where(
                Request.owner_id.in_(select(User.user_id).where(User.username == query.owner))
            )
        if query.is_approved is not None:
            stmt = stmt.where(Request.is_approved == query.is_approved.value)
        return stmt

    async def count(self, query: RequestQuery = None) -> int:
        result = await self.db.execute(self._filtered(select(func.count(Request.request_id)), query))
        return result.scalar() or 0

    async def list(self, query: RequestQuery = None) -> List[Request]:
        stmt = self._filtered(select(Request), query)

        sort = (query.sort if query else None) or "name"
        descending = sort.startswith("-")
        column = SORT_COLUMNS.get(sort.lstrip("-"))
        if column is None:
            raise ValidationError(f"unsupported sort key {sort}")
        stmt = stmt.order_by(column.desc() if descending else column.asc(), Request.request_id)

        if query and query.page_size:
            stmt = stmt.offset((query.page - 1) * query.page_size).limit(query.page_size)

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def update(self, request: Request, *fields: str):
        """
        Persist the given attributes of ``request``.

        Raises:
            NotFoundError: If no live row was updated
        """
        values = {field: getattr(request, field) for field in fields}
        values["update_time"] = datetime.now().timestamp()

        result = await self.db.execute(
            update(Request)
            .where(Request.request_id == request.request_id, Request.deleted.is_(False))
            .values(**values)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"request with id {request.request_id} not found")

        await self.db.commit()

    async def transition(self, request_id: int, new_status: ApprovalStatus) -> Request:
        """
        Move a request out of NOT_DETERMINED.

        The status check happens in the UPDATE itself, so two concurrent
        decisions cannot both succeed.

        Raises:
            NotFoundError: If the request does not exist
            ConflictError: If the request was already decided
        """
        result = await self.db.execute(
            update(Request)
            .where(
                Request.request_id == request_id,
                Request.deleted.is_(False),
                Request.is_approved == ApprovalStatus.NOT_DETERMINED.value,
            )
            .values(is_approved=new_status.value, update_time=datetime.now().timestamp())
        )

        if result.rowcount == 0:
            await self.db.rollback()
            current = await self.get(request_id)
            logger.warning(
                "request_transition_conflict",
                request_id=request_id,
                current_status=ApprovalStatus(current.is_approved).name,
                attempted_status=new_status.name,
            )
            raise ConflictError(
                f"request {request_id} is already {ApprovalStatus(current.is_approved).name.lower()}"
            )

        await self.db.commit()

        request = await self.get(request_id)
        await self.db.refresh(request)
        return request

    async def delete(self, request_id: int):
        """Tombstone the request: rename it to ``name#id`` and mark it deleted"""
        request = await self.get(request_id)

        request.name = truncate(request.name, f"#{request.request_id}", REQUEST_NAME_MAX_LEN)
        request.deleted = True
        request.update_time = datetime.now().timestamp()
        await self.db.commit()

        logger.info("request_deleted", request_id=request_id, tombstone_name=request.name)
