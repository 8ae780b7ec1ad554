"""Health check and metrics endpoints."""

from datetime import datetime
from fastapi import APIRouter, Depends
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from regflow.api.v1.dependencies import get_dispatcher
from regflow.models import Request, get_db
from regflow.models.schemas import ApprovalStatus, HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(dispatcher=Depends(get_dispatcher)):
    """Health check endpoint"""
    stats = dispatcher.get_stats()
    return HealthResponse(
        status="healthy" if stats["running"] else "degraded",
        timestamp=datetime.now().timestamp(),
        dispatcher={"running": stats["running"], "pending_tasks": stats["pending_tasks"]},
    )


@router.get("/metrics")
async def metrics(
    db_session: AsyncSession = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
):
    """
    System metrics endpoint for observability.
    Returns request counts by approval status and dispatcher stats.
    """
    request_counts = await db_session.execute(
        select(Request.is_approved, func.count(Request.request_id))
        .where(Request.deleted.is_(False))
        .group_by(Request.is_approved)
    )
    requests_by_status = {
        ApprovalStatus(status).name: count for status, count in request_counts.fetchall()
    }

    return {
        "timestamp": datetime.now().timestamp(),
        "requests": {
            "total": sum(requests_by_status.values()),
            "by_status": requests_by_status,
        },
        "dispatcher": dispatcher.get_stats(),
    }
