"""Database connection and session management."""

import asyncio
import logging
import ssl
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from fastapi import Request
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from dabao_access.config import Settings
from dabao_access.errors import StoreUnavailable

logger = logging.getLogger(__name__)

# Failures that mean "the store is not answering", as opposed to a bad query.
UNAVAILABLE_ERRORS = (
    OperationalError,
    InterfaceError,
    PoolTimeoutError,
    asyncio.TimeoutError,
    OSError,
)


def _make_ssl_context_for_supabase():
    """SSL context for Supabase - disables cert verification to avoid macOS chain issues."""
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def get_engine_url_and_connect_args(settings: Settings):
    """Strip sslmode from URL (asyncpg doesn't accept it) and add SSL/timeouts via connect_args."""
    url = settings.database_url
    connect_args = {}
    if "sslmode=" in url or "ssl=" in url:
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        query.pop("sslmode", None)
        query.pop("ssl", None)
        new_query = urlencode(query, doseq=True)
        url = urlunparse(parsed._replace(query=new_query))
        if "supabase" in settings.database_url:
            connect_args["ssl"] = _make_ssl_context_for_supabase()
    if url.startswith("postgresql+asyncpg"):
        # Fail fast instead of hanging on an unreachable database
        connect_args["timeout"] = settings.db_timeout_seconds
        connect_args["command_timeout"] = settings.db_timeout_seconds
    return url, connect_args


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the process-wide engine. Called once at startup."""
    url, connect_args = get_engine_url_and_connect_args(settings)
    kwargs = {}
    if url.startswith("postgresql"):
        kwargs["pool_timeout"] = settings.db_timeout_seconds
    return create_async_engine(
        url,
        echo=settings.log_level == "DEBUG",
        connect_args=connect_args,
        **kwargs,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@asynccontextmanager
async def store_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Open a session and report connectivity failures as StoreUnavailable."""
    try:
        async with session_factory() as session:
            yield session
    except UNAVAILABLE_ERRORS as exc:
        logger.warning("Data store unavailable: %s", exc)
        raise StoreUnavailable() from exc


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency for database sessions."""
    async with store_session(request.app.state.session_factory) as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
