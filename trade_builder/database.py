"""
Trade Builder - Database Engine.

============================================================
PURPOSE
============================================================
Async engine and session factory for the SQL trade store.

- URL from DATABASE_URL (python-dotenv loads .env)
- postgresql:// URLs are upgraded to the asyncpg driver
- SQLite (aiosqlite) for tests and local runs

============================================================
"""

import os
import logging
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig
from .models import Base


logger = logging.getLogger(__name__)


DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///trade_builder.db"


# =============================================================
# DATABASE URL
# =============================================================

def get_database_url(url: Optional[str] = None) -> str:
    """
    Resolve the async database URL.

    Args:
        url: Explicit URL, overrides the environment

    Returns:
        URL with an async driver
    """
    if not url:
        load_dotenv()
        url = os.getenv("DATABASE_URL")

    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")

    if url.startswith("postgresql://") or url.startswith("postgres://"):
        # Convert sync URL to async
        url = "postgresql+asyncpg://" + url.split("://", 1)[1]
    elif url.startswith("sqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    return url


# =============================================================
# ENGINE AND SESSIONS
# =============================================================

def create_engine_from_config(config: Optional[DatabaseConfig] = None) -> AsyncEngine:
    """
    Create an async engine.

    Args:
        config: Database configuration

    Returns:
        SQLAlchemy AsyncEngine
    """
    config = config or DatabaseConfig()
    url = get_database_url(config.url)

    logger.info(f"Creating database engine for: {url.split('@')[-1]}")

    if url.startswith("sqlite"):
        kwargs = {}
        if ":memory:" in url:
            # One shared connection, otherwise every session sees an empty DB
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        return create_async_engine(url, echo=config.echo, **kwargs)

    return create_async_engine(
        url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_recycle=config.pool_recycle,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to an engine."""
    return async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create all trade builder tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Trade builder tables created")

