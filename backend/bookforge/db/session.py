"""
Async engine and session factory construction.

Nothing here is created at import time: the process entry point builds one
engine and one session factory and hands them to the services that need them.
"""
import logging
from typing import Optional

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from bookforge.core.config import Settings

logger = logging.getLogger(__name__)


def _install_sqlite_pragmas(engine: AsyncEngine, busy_timeout_ms: int) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):  # noqa: ARG001
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.close()


def build_engine(
    url: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
    echo: Optional[bool] = None,
) -> AsyncEngine:
    """Create the async engine for ``url`` (defaults to ``settings.DATABASE_URL``)."""
    if settings is None:
        from bookforge.core.config import settings as default_settings

        settings = default_settings
    database_url = url or settings.DATABASE_URL
    engine_kwargs = {"echo": settings.DATABASE_ECHO if echo is None else echo}
    is_sqlite = make_url(database_url).get_backend_name() == "sqlite"
    if not is_sqlite:
        engine_kwargs.update(pool_pre_ping=True, pool_size=10, max_overflow=20)

    engine = create_async_engine(database_url, **engine_kwargs)
    if is_sqlite:
        _install_sqlite_pragmas(engine, settings.SQLITE_BUSY_TIMEOUT_MS)
    logger.info("Database engine created for %s", make_url(database_url).render_as_string(hide_password=True))
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by services and the worker; objects stay readable after commit."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
