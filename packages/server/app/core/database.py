"""
Database connection, store selection and the membership service dependency.
"""

from __future__ import annotations

from functools import lru_cache

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from app.core.config import get_settings
from app.core.events import default_publisher
from app.services.membership import MembershipService
from app.services.membership_store import (
    MembershipStore,
    MemoryMembershipStore,
    SqlMembershipStore,
)

log = structlog.get_logger()


@lru_cache
def get_engine() -> AsyncEngine:
    settings = get_settings()
    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        future=True,
    )


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables (development only)."""
    # Register table metadata.
    from app import models  # noqa: F401

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def ping_database() -> bool:
    try:
        async with get_engine().connect() as conn:
            await conn.execute(sa.text("SELECT 1"))
        return True
    except (OperationalError, InterfaceError, OSError) as exc:
        log.warning("database.unavailable", error=str(exc))
        return False


@lru_cache
def get_membership_store() -> MembershipStore:
    """The process-wide store for the configured backend."""
    if get_settings().store_backend == "memory":
        return MemoryMembershipStore()
    return SqlMembershipStore(get_session_factory())


def get_membership_service() -> MembershipService:
    """FastAPI dependency for the membership service."""
    return MembershipService(get_membership_store(), publisher=default_publisher())
