"""Async database connection using SQLAlchemy (supports SQLite and PostgreSQL)."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.exc import InterfaceError, InvalidRequestError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from sofa_worker.config import get_settings

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url(url: Optional[str] = None) -> str:
    """Convert database URL to async format."""
    url = url or get_settings().DATABASE_URL

    # SQLite
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    # PostgreSQL
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def create_engine(url: Optional[str] = None) -> AsyncEngine:
    """Build an async engine with driver-specific pool settings."""
    database_url = get_database_url(url)
    engine_kwargs = {"echo": False}

    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 5
        engine_kwargs["pool_recycle"] = 300
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_reset_on_return"] = "rollback"
        engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": "60000"}
        }

    return create_async_engine(database_url, **engine_kwargs)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Initialize database tables."""
    # Register table metadata before create_all
    from sofa_worker import models  # noqa: F401

    engine = engine or get_engine()
    logger.info("Initializing database tables...")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("Database tables created successfully.")


async def close_db() -> None:
    """Close database connections."""
    global _engine, _session_factory
    if _engine is None:
        return
    logger.info("Closing database connections...")
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("Database connections closed.")


def _is_retryable(error: Exception) -> bool:
    message = str(error).lower()
    return any(
        marker in message
        for marker in ("greenlet", "closed", "connection", "terminated", "locked")
    )


@asynccontextmanager
async def get_session_with_retry(
    session_factory: Optional[sessionmaker] = None,
    max_retries: int = 3,
    retry_delay: float = 1.0,
):
    """
    Context manager that provides a session with automatic retry on connection errors.

    Example:
        async with get_session_with_retry(factory) as session:
            result = await session.execute(...)
            await session.commit()

    Retries only happen on session CREATION failure. If a connection drops
    during execution, the exception propagates to the caller.
    """
    factory = session_factory or get_session_factory()
    last_error = None
    current_delay = retry_delay
    session = None

    for attempt in range(max_retries):
        try:
            session = factory()
            # Test the connection is alive before yielding
            await session.connection()
            break
        except (InterfaceError, OperationalError, InvalidRequestError) as e:
            last_error = e
            if session is not None:
                try:
                    await session.close()
                except Exception as close_error:
                    logger.debug(f"Error closing failed session: {close_error}")
                session = None

            if _is_retryable(e) and attempt < max_retries - 1:
                logger.warning(
                    f"Database connection error (attempt {attempt + 1}/{max_retries}): {e}. "
                    f"Retrying in {current_delay}s..."
                )
                await asyncio.sleep(current_delay)
                current_delay *= 2
                continue
            raise

    if session is None:
        if last_error:
            raise last_error
        raise RuntimeError("Failed to create database session after retries")

    try:
        yield session
    finally:
        try:
            await session.close()
        except Exception as close_error:
            logger.debug(f"Error closing session during cleanup: {close_error}")
