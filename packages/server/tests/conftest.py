"""
Shared fixtures: an in-memory document store, a SQLite-backed SQL store,
the membership service over either, and an API client wired to them.
"""

from __future__ import annotations

import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database import get_membership_service, get_membership_store, init_db
from app.main import app
from app.services.membership import MembershipService
from app.services.membership_store import MembershipStore, MemoryMembershipStore, SqlMembershipStore
from foundly_shared.schemas.users import UserSnapshot


def _check_invariant(store: MemoryMembershipStore) -> None:
    """u.organizations contains o  <=>  o.members contains u, with no
    duplicates on either side and a current organization the user holds."""
    for org in store.organizations.values():
        member_ids = [m.user_id for m in org.members]
        assert len(member_ids) == len(set(member_ids)), f"duplicate member rows in {org.id}"
        for user_id in member_ids:
            user = store.users.get(user_id)
            assert user is not None, f"member {user_id} of {org.id} does not exist"
            assert user.entry_for(org.id) is not None, f"{user_id} missing entry for {org.id}"

    for user in store.users.values():
        org_ids = [e.organization_id for e in user.organizations]
        assert len(org_ids) == len(set(org_ids)), f"duplicate entries in {user.id}"
        for org_id in org_ids:
            org = store.organizations.get(org_id)
            assert org is not None, f"{user.id} references missing org {org_id}"
            assert org.member_for(user.id) is not None, f"{org_id} missing member {user.id}"
        if user.current_organization is not None:
            assert user.current_organization in org_ids


@pytest.fixture
def assert_consistent():
    return _check_invariant


@pytest.fixture
def store() -> MemoryMembershipStore:
    return MemoryMembershipStore()


@pytest.fixture
def service(store) -> MembershipService:
    return MembershipService(store, retry_backoff=0, timeout=1.0)


@pytest.fixture
def make_user(store):
    """Insert a user document directly and return its id."""

    async def _make(email: str | None = None, name: str = "Test User", target: MembershipStore | None = None):
        user = UserSnapshot(
            id=uuid.uuid4(),
            email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
            name=name,
        )
        await (target or store).insert_user(user)
        return user.id

    return _make


# ---------------------------------------------------------------------------
# SQL store on in-memory SQLite
# ---------------------------------------------------------------------------

@pytest.fixture
async def sql_store():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield SqlMembershipStore(session_factory)
    await engine.dispose()


@pytest.fixture
def sql_service(sql_store) -> MembershipService:
    return MembershipService(sql_store, retry_backoff=0, timeout=5.0)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture
async def client(store, service):
    app.dependency_overrides[get_membership_store] = lambda: store
    app.dependency_overrides[get_membership_service] = lambda: service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth(user_id: uuid.UUID) -> dict:
    """Simple Bearer UUID auth (POC compat)."""
    return {"Authorization": f"Bearer {user_id}"}


@pytest.fixture
def auth_headers():
    return auth
