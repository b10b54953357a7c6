"""
Store adapter tests.

Tests cover:
- Version-guarded single-document writes (memory and SQL)
- Compensating rollback in the memory store, and PartialFailure when an
  undo itself fails
- Memory-store transactions running one at a time
- Per-call timeouts and transient-failure retries in the service
- SQL transactions rolling back both documents together
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone

import pytest

from app.core.exceptions import (
    ConcurrentModificationError,
    DuplicateEmailError,
    DuplicateJoinCodeError,
    PartialFailureError,
    StoreTimeoutError,
    StoreUnavailableError,
)
from app.services.membership import MembershipService
from app.services.membership_store import BoundedStore, MemoryMembershipStore
from foundly_shared.schemas.common import JoinOutcome, MemberRole, StaleSide
from foundly_shared.schemas.organizations import MemberEntry, OrganizationSnapshot
from foundly_shared.schemas.users import UserSnapshot


def _org(code: str = "ABC123", created_by: uuid.UUID | None = None) -> OrganizationSnapshot:
    return OrganizationSnapshot(
        id=uuid.uuid4(),
        name="Scouts",
        join_code=code,
        created_by=created_by or uuid.uuid4(),
    )


class FlakyStore(MemoryMembershipStore):
    """Memory store with switchable failures."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.user_write_failures = 0
        self.user_write_delay = 0.0
        self.fail_org_deletes = False
        self.user_write_calls = 0

    async def write_user_organizations(self, user_id, organizations, current, *, expected_version):
        self.user_write_calls += 1
        if self.user_write_delay:
            await asyncio.sleep(self.user_write_delay)
        if self.user_write_failures:
            self.user_write_failures -= 1
            raise StoreUnavailableError(detail="connection reset")
        return await super().write_user_organizations(
            user_id, organizations, current, expected_version=expected_version
        )

    async def delete_organization(self, org_id):
        if self.fail_org_deletes:
            raise StoreUnavailableError(detail="connection reset")
        await super().delete_organization(org_id)


# ---------------------------------------------------------------------------
# Memory store primitives
# ---------------------------------------------------------------------------

class TestMemoryStore:

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, store):
        org = _org()
        await store.insert_organization(org)
        assert await store.write_organization_members(org.id, [], expected_version=1) == 2

        with pytest.raises(ConcurrentModificationError):
            await store.write_organization_members(org.id, [], expected_version=1)

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, store):
        org = _org()
        await store.insert_organization(org)
        snapshot = await store.find_organization_by_id(org.id)
        snapshot.members.append(
            MemberEntry(user_id=uuid.uuid4(), joined_at=datetime.now(timezone.utc))
        )
        assert store.organizations[org.id].members == []

    @pytest.mark.asyncio
    async def test_join_code_lookup_is_case_insensitive(self, store):
        org = _org("ABC123")
        await store.insert_organization(org)
        found = await store.find_organization_by_join_code("abc123")
        assert found is not None and found.id == org.id
        with pytest.raises(DuplicateJoinCodeError):
            await store.insert_organization(_org("abc123"))

    @pytest.mark.asyncio
    async def test_duplicate_email(self, store, make_user):
        await make_user(email="scout@example.com")
        with pytest.raises(DuplicateEmailError):
            await make_user(email="Scout@Example.com")

    @pytest.mark.asyncio
    async def test_transaction_compensates_on_failure(self, store, make_user):
        user_id = await make_user()
        org = _org()

        async def fn(tx):
            await tx.insert_organization(org)
            await tx.write_user_organizations(user_id, [], org.id, expected_version=1)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await store.run_transaction(fn)

        assert org.id not in store.organizations
        user = store.users[user_id]
        assert user.current_organization is None
        # The undo is itself a write, so the version moves forward.
        assert user.version == 3

    @pytest.mark.asyncio
    async def test_transactions_run_one_at_a_time(self):
        store = MemoryMembershipStore(latency=0.001)
        trace = []

        def fn(name):
            async def body(tx):
                trace.append(f"{name}.start")
                await tx.list_user_ids()
                await asyncio.sleep(0.005)
                trace.append(f"{name}.end")
            return body

        await asyncio.gather(store.run_transaction(fn("a")), store.run_transaction(fn("b")))

        assert trace == ["a.start", "a.end", "b.start", "b.end"]


# ---------------------------------------------------------------------------
# Failure handling through the service
# ---------------------------------------------------------------------------

class TestServiceFailureHandling:

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, make_user, assert_consistent):
        store = FlakyStore()
        service = MembershipService(store, retry_backoff=0, max_attempts=3)
        user_id = await make_user(target=store)
        store.user_write_failures = 1

        org = await service.create_with_owner(user_id, {"name": "Scouts"})

        assert list(store.organizations) == [org.id]
        assert store.users[user_id].current_organization == org.id
        assert_consistent(store)

    @pytest.mark.asyncio
    async def test_retries_exhausted_surfaces_error(self, make_user, assert_consistent):
        store = FlakyStore()
        service = MembershipService(store, retry_backoff=0, max_attempts=3)
        user_id = await make_user(target=store)
        store.user_write_failures = 100

        with pytest.raises(StoreUnavailableError):
            await service.create_with_owner(user_id, {"name": "Scouts"})

        assert store.user_write_calls == 3
        assert store.organizations == {}
        assert_consistent(store)

    @pytest.mark.asyncio
    async def test_failed_undo_reports_stale_side(self, make_user):
        store = FlakyStore()
        service = MembershipService(store, retry_backoff=0, max_attempts=3)
        user_id = await make_user(target=store)
        store.user_write_failures = 100
        store.fail_org_deletes = True

        with pytest.raises(PartialFailureError) as exc_info:
            await service.create_with_owner(user_id, {"name": "Scouts"})

        exc = exc_info.value
        assert exc.stale_side == StaleSide.ORGANIZATION.value
        [org_id] = list(store.organizations)
        assert exc.document_id == org_id
        # Not retried.
        assert store.user_write_calls == 1

        # The one-sided edge is repaired by reconcile.
        store.user_write_failures = 0
        report = await service.reconcile(org_id)
        assert report.users_missing_entry == [user_id]
        assert store.users[user_id].entry_for(org_id).role == MemberRole.ADMIN

    @pytest.mark.asyncio
    async def test_timeout_mid_operation_leaves_no_partial_edge(self, make_user, assert_consistent):
        store = FlakyStore()
        service = MembershipService(store, retry_backoff=0, max_attempts=2, timeout=0.05)
        owner = await make_user(target=store)
        org = await service.create_with_owner(owner, {"name": "Scouts", "join_code": "ABC123"})
        u2 = await make_user(target=store)
        store.user_write_delay = 1.0

        with pytest.raises(StoreTimeoutError):
            await service.join(u2, "ABC123")

        assert store.organizations[org.id].member_for(u2) is None
        assert store.users[u2].organizations == []
        assert_consistent(store)

    @pytest.mark.asyncio
    async def test_timeout_is_a_store_unavailable_error(self):
        slow = MemoryMembershipStore(latency=0.5)
        bounded = BoundedStore(slow, 0.01)
        with pytest.raises(StoreUnavailableError) as exc_info:
            await bounded.find_user_by_id(uuid.uuid4())
        assert exc_info.value.code == "STORE_TIMEOUT"

    @pytest.mark.asyncio
    async def test_per_call_timeout_override(self, make_user):
        store = MemoryMembershipStore(latency=0.05)
        service = MembershipService(store, retry_backoff=0, max_attempts=1, timeout=0.01)
        user_id = await make_user(target=store)

        with pytest.raises(StoreTimeoutError):
            await service.create_with_owner(user_id, {"name": "Slow"})
        org = await service.create_with_owner(user_id, {"name": "Slow"}, timeout=1.0)
        assert store.users[user_id].current_organization == org.id


# ---------------------------------------------------------------------------
# SQL store
# ---------------------------------------------------------------------------

class TestSqlStore:

    @pytest.mark.asyncio
    async def test_membership_flow(self, sql_store, sql_service, make_user):
        u1 = await make_user(target=sql_store)
        u2 = await make_user(target=sql_store)

        org = await sql_service.create_with_owner(u1, {"name": "Scouts", "customJoinCode": "abc123"})
        assert org.join_code == "ABC123"

        first = await sql_service.join(u2, "abc123")
        second = await sql_service.join(u2, "ABC123")
        assert first.outcome is JoinOutcome.JOINED
        assert second.outcome is JoinOutcome.ALREADY_MEMBER

        stored = await sql_store.find_organization_by_id(org.id)
        assert [m.user_id for m in stored.members] == [u1, u2]
        user = await sql_store.find_user_by_id(u2)
        assert [e.organization_id for e in user.organizations] == [org.id]
        assert user.current_organization == org.id

        await sql_service.leave(u2, org.id)
        stored = await sql_store.find_organization_by_id(org.id)
        user = await sql_store.find_user_by_id(u2)
        assert [m.user_id for m in stored.members] == [u1]
        assert user.organizations == [] and user.current_organization is None

    @pytest.mark.asyncio
    async def test_version_guard(self, sql_store, make_user):
        user_id = await make_user(target=sql_store)
        assert await sql_store.write_user_organizations(user_id, [], None, expected_version=1) == 2
        with pytest.raises(ConcurrentModificationError):
            await sql_store.write_user_organizations(user_id, [], None, expected_version=1)

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_both_documents(self, sql_store, make_user):
        user_id = await make_user(target=sql_store)
        org = _org(created_by=user_id)

        async def fn(tx):
            await tx.insert_organization(org)
            await tx.write_user_organizations(user_id, [], org.id, expected_version=1)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await sql_store.run_transaction(fn)

        assert await sql_store.find_organization_by_id(org.id) is None
        user = await sql_store.find_user_by_id(user_id)
        assert user.version == 1 and user.current_organization is None

    @pytest.mark.asyncio
    async def test_unique_constraints(self, sql_store, make_user):
        await sql_store.insert_organization(_org("ABC123"))
        with pytest.raises(DuplicateJoinCodeError):
            await sql_store.insert_organization(_org("ABC123"))

        await make_user(email="scout@example.com", target=sql_store)
        with pytest.raises(DuplicateEmailError):
            await sql_store.insert_user(
                UserSnapshot(id=uuid.uuid4(), email="SCOUT@example.com", name="Dup")
            )

    @pytest.mark.asyncio
    async def test_find_users_with_organization(self, sql_store, sql_service, make_user):
        u1 = await make_user(target=sql_store)
        u2 = await make_user(target=sql_store)
        org = await sql_service.create_with_owner(u1, {"name": "Scouts", "join_code": "ABC123"})
        await sql_service.create_with_owner(u2, {"name": "Other"})

        users = await sql_store.find_users_with_organization(org.id)
        assert [u.id for u in users] == [u1]

    @pytest.mark.asyncio
    async def test_reconcile_repairs_one_sided_edge(self, sql_store, sql_service, make_user):
        u1 = await make_user(target=sql_store)
        u2 = await make_user(target=sql_store)
        org = await sql_service.create_with_owner(u1, {"name": "Scouts", "join_code": "ABC123"})
        # Member row without the user-side entry.
        members = org.members + [
            MemberEntry(user_id=u2, joined_at=datetime.now(timezone.utc))
        ]
        await sql_store.write_organization_members(org.id, members, expected_version=org.version)

        report = await sql_service.reconcile(org.id)

        assert report.users_missing_entry == [u2]
        user = await sql_store.find_user_by_id(u2)
        assert user.entry_for(org.id) is not None
        assert user.current_organization is None
        again = await sql_service.reconcile(org.id)
        assert again.repaired is False

    @pytest.mark.asyncio
    async def test_reconcile_resets_dangling_current_pointer(self, sql_store, sql_service, make_user):
        u1 = await make_user(target=sql_store)
        u2 = await make_user(target=sql_store)
        org = await sql_service.create_with_owner(u1, {"name": "Scouts", "join_code": "ABC123"})
        await sql_store.write_user_organizations(u2, [], org.id, expected_version=1)

        report = await sql_service.reconcile(org.id)

        assert report.current_organization_reset == [u2]
        user = await sql_store.find_user_by_id(u2)
        assert user.current_organization is None
        stored = await sql_store.find_organization_by_id(org.id)
        assert stored.member_for(u2) is None
