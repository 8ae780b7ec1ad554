"""Application startup and shutdown lifecycle management."""

from contextlib import asynccontextmanager
import structlog
from fastapi import FastAPI

from regflow.adapters import (
    JobScanTrigger,
    JobServiceClient,
    SmtpMailSender,
    SqlArtifactStore,
    SqlProjectProvisioner,
    SqlQuotaController,
    SqlRepositoryStore,
    SqlTagLookup,
    SqlUserDirectory,
)
from regflow.config.settings import settings
from regflow.core.event_bus import Dispatcher
from regflow.core.events import HandlerRegistry, register_event_handlers
from regflow.models import Database

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Wires the database, collaborators, handlers and dispatcher for the app.
    Each run builds its own handler registry, filled before the dispatcher
    starts and freezes it, so the app can be started again in one process.
    A database already placed on ``app.state.db`` is reused.
    """
    logger.info("application_starting", environment=settings.environment)
    settings.validate_critical_config()

    # Initialize database
    db = getattr(app.state, "db", None) or Database()
    await db.init()
    logger.info("database_initialized")

    users = SqlUserDirectory(db)
    jobs = JobServiceClient()

    registry = HandlerRegistry()
    register_event_handlers(
        registry,
        users=users,
        tags=SqlTagLookup(db),
        artifacts=SqlArtifactStore(db),
        repositories=SqlRepositoryStore(db),
        scanner=JobScanTrigger(jobs),
        mail_sender=SmtpMailSender(),
        jobs=jobs,
    )
    logger.info("event_handlers_registered", topics=registry.topics())

    dispatcher = Dispatcher(registry)
    await dispatcher.start()

    # Store in app state for access in routes
    app.state.db = db
    app.state.registry = registry
    app.state.dispatcher = dispatcher
    app.state.provisioner = SqlProjectProvisioner(db)
    app.state.quotas = SqlQuotaController(db)
    app.state.users = users

    logger.info("application_ready")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    await dispatcher.stop()
    await db.close()

    logger.info("application_stopped")
