"""
Main FastAPI application - project-creation request workflow.
"""

import os
import structlog
from fastapi import FastAPI

from regflow.api.errors import register_exception_handlers
from regflow.api.middleware import TraceMiddleware
from regflow.api.v1 import router as api_v1_router
from regflow.core.startup import lifespan

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    logger_factory=structlog.PrintLoggerFactory(),
)

logger = structlog.get_logger()

# ============================================================================
# FastAPI Application
# ============================================================================

app = FastAPI(
    title="regflow",
    description="Project-creation requests with approval and registry event dispatch",
    version="1.0.0",
    lifespan=lifespan,
)

# ============================================================================
# Middleware and Error Handling
# ============================================================================

app.add_middleware(TraceMiddleware)
register_exception_handlers(app)

# ============================================================================
# Mount API Routes
# ============================================================================

app.include_router(api_v1_router)

# ============================================================================
# Application Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")
    reload = os.getenv("RELOAD", "false").lower() == "true"

    logger.info(
        "starting_server",
        host=host,
        port=port,
        reload=reload
    )

    uvicorn.run(
        "main:app" if reload else app,
        host=host,
        port=port,
        reload=reload
    )
