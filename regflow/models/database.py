"""
Database configuration and session management.
Currently uses SQLite for demo and local development.

SQLite Configuration:
- WAL (Write-Ahead Logging) mode so readers never block the status writes
- Foreign key constraints enforcement
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy import event, text
from contextlib import asynccontextmanager
import structlog

from regflow.config.settings import settings

logger = structlog.get_logger()

# SQLite connection arguments
connect_args = settings.get_connection_args()

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    future=True,
    connect_args=connect_args,
)
logger.info(
    "database_engine_created",
    type="sqlite",
    url=settings.database_url,
    echo_sql=settings.database_echo
)


# Foreign keys must be enabled per connection
@event.listens_for(engine.sync_engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign keys for each connection"""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Base class for models
Base = declarative_base()


async def init_db(db_engine=None):
    """
    Initialize SQLite database - create all tables and configure pragmas.
    """
    db_engine = db_engine or engine
    async with db_engine.begin() as conn:
        await conn.execute(text("PRAGMA journal_mode=WAL"))
        await conn.execute(text("PRAGMA foreign_keys=ON"))
        await conn.execute(text("PRAGMA synchronous=NORMAL"))

        logger.info(
            "database_initialized",
            type="sqlite",
            journal_mode="WAL",
            foreign_keys=True,
        )

        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncSession:
    """
    Dependency for getting database session in FastAPI routes.

    Usage:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


class Database:
    """Database helper class for managing connections"""

    def __init__(self, db_engine=None, session_factory=None):
        self.engine = db_engine or engine
        self.session_factory = session_factory or AsyncSessionLocal

    async def init(self):
        """Initialize database schema"""
        await init_db(self.engine)

    async def close(self):
        """Close all connections"""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """
        Get a database session that commits on success.

        Usage:
            async with db.session() as session:
                result = await session.execute(...)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
