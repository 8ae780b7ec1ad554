"""API v1 route modules."""

from regflow.api.v1.routes.requests import router as requests_router
from regflow.api.v1.routes.health import router as health_router

__all__ = [
    'requests_router',
    'health_router',
]
