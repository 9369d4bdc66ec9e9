"""
Async SQLAlchemy engine and sessions.

Production runs on asyncpg; the test suite builds its own aiosqlite engine from
Base.metadata. Sessions use expire_on_commit=False, so appointment and backjob
rows stay readable after commit without lazy loads on the event loop.
"""
import logging
from typing import AsyncGenerator, Optional

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "ck": "ck_%(table_name)s_%(constraint_name)s",
        "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
        "pk": "pk_%(table_name)s",
    })


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from fixmo.config import get_settings
        settings = get_settings()
        pool_args = {}
        # SQLite (local runs, tests) uses a static pool without sizing knobs
        if not settings.database_url.startswith("sqlite"):
            pool_args = {
                "pool_size": settings.database_pool_size,
                "max_overflow": settings.database_max_overflow,
            }
        _engine = create_async_engine(settings.database_url, pool_pre_ping=True, **pool_args)
    return _engine


def _sessions() -> async_sessionmaker[AsyncSession]:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _sessionmaker


def async_session_factory() -> AsyncSession:
    """Session for workers and scripts; use as `async with async_session_factory() as db`."""
    return _sessions()()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session. Services commit their own units of work; this
    commits anything left pending and rolls back when the route raises.
    """
    async with _sessions()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            logger.debug("Rolling back request session", exc_info=True)
            await session.rollback()
            raise


async def dispose_engine() -> None:
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None
