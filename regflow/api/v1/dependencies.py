"""Shared dependencies for API routes."""

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from regflow.core import Dispatcher, RequestController
from regflow.models import Database, get_db

DEFAULT_OPERATOR = "admin"


def get_dispatcher(request: Request) -> Dispatcher:
    """Get dispatcher from app state."""
    return request.app.state.dispatcher


def get_database(request: Request) -> Database:
    """Get database instance from app state."""
    return request.app.state.db


def get_operator(x_operator: str = Header(default=DEFAULT_OPERATOR)) -> str:
    """Operator recorded on approve/reject events."""
    return x_operator or DEFAULT_OPERATOR


def get_request_controller(
    request: Request,
    db_session: AsyncSession = Depends(get_db),
) -> RequestController:
    """
    Build a request controller bound to the current database session and the
    collaborators created at startup.
    """
    state = request.app.state
    return RequestController(
        db_session,
        event_bus=state.dispatcher,
        provisioner=state.provisioner,
        quotas=state.quotas,
        users=state.users,
    )
