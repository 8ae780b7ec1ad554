"""API v1 module - consolidated router for all endpoints."""

from fastapi import APIRouter
from regflow.api.v1.routes import health_router, requests_router

# Create main v1 router
router = APIRouter()

router.include_router(health_router)
router.include_router(requests_router)

__all__ = ['router']
