from typing import List, Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import inspect, text
import logging

from config import get_settings

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def normalise_database_url(url: str) -> str:
    """Ensure the asyncpg driver is used for PostgreSQL URLs."""
    if url.startswith('postgresql://'):
        return url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    if url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql+asyncpg://', 1)
    return url


def create_engine_for_url(url: str, ssl: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to PostgreSQL."""
    url = normalise_database_url(url)

    if url.startswith('postgresql+asyncpg://'):
        return create_async_engine(
            url,
            echo=False,
            pool_pre_ping=True,
            pool_size=5,
            max_overflow=10,
            connect_args={"ssl": "require"} if ssl else {}
        )

    return create_async_engine(url, echo=False)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


def get_engine() -> AsyncEngine:
    """Get the process-wide engine, created on first use from settings."""
    global _engine
    if _engine is None:
        settings = get_settings()
        if not settings.DATABASE_URL:
            raise ValueError("DATABASE_URL environment variable is not set")
        _engine = create_engine_for_url(settings.DATABASE_URL, ssl=settings.DATABASE_SSL)
    return _engine


def get_session_factory() -> async_sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


async def missing_tables(engine: Optional[AsyncEngine] = None) -> List[str]:
    """Reconciliation tables that do not exist yet in the connected database."""
    async with (engine or get_engine()).connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    return sorted(t for t in Base.metadata.tables if t not in existing)


async def init_db():
    """Check connectivity on startup and warn about tables the migration has not created."""
    async with get_engine().begin() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection successful")

    missing = await missing_tables()
    if missing:
        logger.warning(f"Missing reconciliation tables, run migrations/create_reconciliation_tables.py: {missing}")


async def dispose_db():
    """Dispose the engine on shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
