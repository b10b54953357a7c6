"""
Property test for the cross-entity membership invariant.

Random sequences of create/join/leave/set_current, applied from an empty
store, must leave u.organizations and o.members agreeing after every call.
"""

from __future__ import annotations

import asyncio
import random

import pytest

from app.core.exceptions import NotAMemberError, OrganizationNotFoundError
from app.services.membership import MembershipService
from app.services.membership_store import MemoryMembershipStore
from foundly_shared.schemas.common import JoinOutcome


async def _random_step(rng, service, store, users, codes):
    user_id = rng.choice(users)
    op = rng.choice(["create", "join", "join", "join", "leave", "leave", "set_current"])

    if op == "create" or not codes:
        org = await service.create_with_owner(user_id, {"name": f"Org {len(codes)}"})
        codes[org.id] = org.join_code
        return

    org_id = rng.choice(list(codes))
    if op == "join":
        code = codes[org_id]
        if rng.random() < 0.5:
            code = code.lower()
        if rng.random() < 0.1:
            code = "NOSUCH1"
        try:
            before = store.organizations[org_id].member_for(user_id) is not None
            result = await service.join(user_id, code)
        except OrganizationNotFoundError:
            assert code == "NOSUCH1"
            return
        expected = JoinOutcome.ALREADY_MEMBER if before else JoinOutcome.JOINED
        assert result.outcome is expected
    elif op == "leave":
        await service.leave(user_id, org_id)
        assert store.organizations[org_id].member_for(user_id) is None
        assert store.users[user_id].entry_for(org_id) is None
    else:
        try:
            await service.set_current(user_id, org_id)
        except NotAMemberError:
            assert store.users[user_id].entry_for(org_id) is None
            return
        assert store.users[user_id].current_organization == org_id


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(20))
async def test_invariant_holds_after_every_call(seed, make_user, assert_consistent):
    rng = random.Random(seed)
    store = MemoryMembershipStore()
    service = MembershipService(store, retry_backoff=0, timeout=1.0)
    users = [await make_user(target=store) for _ in range(5)]
    codes: dict = {}

    for _ in range(60):
        await _random_step(rng, service, store, users, codes)
        assert_consistent(store)


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(5))
async def test_invariant_holds_under_concurrency(seed, make_user, assert_consistent):
    rng = random.Random(seed)
    store = MemoryMembershipStore(latency=0.001)
    service = MembershipService(store, retry_backoff=0.001, max_attempts=20, timeout=1.0)
    users = [await make_user(target=store) for _ in range(4)]
    orgs = [
        await service.create_with_owner(users[i], {"name": f"Org {i}"}) for i in range(2)
    ]

    async def worker(user_id):
        for _ in range(10):
            org = rng.choice(orgs)
            if rng.random() < 0.6:
                await service.join(user_id, org.join_code)
            else:
                await service.leave(user_id, org.id)

    await asyncio.gather(*(worker(u) for u in users))
    assert_consistent(store)


async def _after(delay, coro):
    await asyncio.sleep(delay)
    return await coro


@pytest.mark.asyncio
@pytest.mark.parametrize("offset", [0.0, 0.0005, 0.001, 0.002, 0.0035, 0.005, 0.008])
async def test_concurrent_join_and_leave_of_same_pair(offset, make_user, assert_consistent):
    store = MemoryMembershipStore(latency=0.001)
    service = MembershipService(store, retry_backoff=0.001, max_attempts=10, timeout=1.0)
    owner = await make_user(target=store)
    org = await service.create_with_owner(owner, {"name": "Scouts", "join_code": "ABC123"})
    u = await make_user(target=store)

    await asyncio.gather(service.join(u, "ABC123"), _after(offset, service.leave(u, org.id)))

    has_row = store.organizations[org.id].member_for(u) is not None
    has_entry = store.users[u].entry_for(org.id) is not None
    assert has_row == has_entry
    assert_consistent(store)


@pytest.mark.asyncio
@pytest.mark.parametrize("offset", [0.0, 0.001, 0.0025, 0.004])
async def test_concurrent_leave_and_rejoin_of_same_pair(offset, make_user, assert_consistent):
    store = MemoryMembershipStore(latency=0.001)
    service = MembershipService(store, retry_backoff=0.001, max_attempts=10, timeout=1.0)
    owner = await make_user(target=store)
    org = await service.create_with_owner(owner, {"name": "Scouts", "join_code": "ABC123"})
    u = await make_user(target=store)
    await service.join(u, "ABC123")

    await asyncio.gather(service.leave(u, org.id), _after(offset, service.join(u, "abc123")))

    assert_consistent(store)


@pytest.mark.asyncio
@pytest.mark.parametrize("offset", [0.0, 0.001, 0.0025, 0.004])
async def test_concurrent_join_and_reconcile(offset, make_user, assert_consistent):
    store = MemoryMembershipStore(latency=0.001)
    service = MembershipService(store, retry_backoff=0.001, max_attempts=10, timeout=1.0)
    owner = await make_user(target=store)
    org = await service.create_with_owner(owner, {"name": "Scouts", "join_code": "ABC123"})
    u = await make_user(target=store)

    result, report = await asyncio.gather(
        service.join(u, "ABC123"), _after(offset, service.reconcile(org.id))
    )

    assert result.outcome is JoinOutcome.JOINED
    assert report.users_missing_entry == [] and report.members_missing_row == []
    assert store.organizations[org.id].member_for(u) is not None
    assert_consistent(store)


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(5))
async def test_invariant_holds_with_shared_pairs(seed, make_user, assert_consistent):
    rng = random.Random(seed)
    store = MemoryMembershipStore(latency=0.001)
    service = MembershipService(store, retry_backoff=0.001, max_attempts=20, timeout=1.0)
    users = [await make_user(target=store) for _ in range(2)]
    orgs = [
        await service.create_with_owner(users[0], {"name": f"Org {i}"}) for i in range(2)
    ]

    # Several workers per user, so the same (user, org) pair overlaps.
    async def worker():
        for _ in range(8):
            user_id = rng.choice(users)
            org = rng.choice(orgs)
            roll = rng.random()
            if roll < 0.45:
                await service.join(user_id, org.join_code)
            elif roll < 0.9:
                await service.leave(user_id, org.id)
            else:
                await service.reconcile(org.id)

    await asyncio.gather(*(worker() for _ in range(4)))
    assert_consistent(store)
