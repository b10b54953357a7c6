"""
Membership persistence: the store contract the membership service writes
through, plus its adapters.

- ``SqlMembershipStore``: SQLModel tables, one database transaction per
  ``run_transaction`` and version-guarded ``UPDATE`` statements.
- ``MemoryMembershipStore``: in-process document collections with no
  multi-document transactions; ``run_transaction`` falls back to
  ``CompensatingTransaction``.
- ``BoundedStore``: wraps any store so every call is bounded by a timeout.
"""

from __future__ import annotations

import abc
import asyncio
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from app.core.exceptions import (
    ConcurrentModificationError,
    DuplicateEmailError,
    DuplicateJoinCodeError,
    MembershipError,
    PartialFailureError,
    StoreTimeoutError,
    StoreUnavailableError,
)
from app.models.organization import Organization
from app.models.user import User
from foundly_shared.schemas.common import StaleSide
from foundly_shared.schemas.organizations import MemberEntry, OrganizationSnapshot
from foundly_shared.schemas.users import UserOrgEntry, UserSnapshot

log = structlog.get_logger()

T = TypeVar("T")
TransactionFn = Callable[["MembershipStore"], Awaitable[T]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MembershipStore(abc.ABC):
    """Persistence primitives over the Users and Organizations collections.

    Each ``write_*`` call is a single-document atomic write guarded by the
    document version: a stale ``expected_version`` raises
    ``ConcurrentModificationError``. Writes return the new version.
    """

    @abc.abstractmethod
    async def find_organization_by_join_code(self, code: str) -> Optional[OrganizationSnapshot]:
        ...

    @abc.abstractmethod
    async def find_organization_by_id(self, org_id: uuid.UUID) -> Optional[OrganizationSnapshot]:
        ...

    @abc.abstractmethod
    async def find_user_by_id(self, user_id: uuid.UUID) -> Optional[UserSnapshot]:
        ...

    @abc.abstractmethod
    async def find_user_by_email(self, email: str) -> Optional[UserSnapshot]:
        ...

    @abc.abstractmethod
    async def find_users_with_organization(self, org_id: uuid.UUID) -> list[UserSnapshot]:
        """Users whose ``organizations`` list references ``org_id``, or whose
        ``current_organization`` is ``org_id``."""

    @abc.abstractmethod
    async def list_organization_ids(self) -> list[uuid.UUID]:
        ...

    @abc.abstractmethod
    async def list_user_ids(self) -> list[uuid.UUID]:
        ...

    @abc.abstractmethod
    async def insert_organization(self, org: OrganizationSnapshot) -> None:
        ...

    @abc.abstractmethod
    async def delete_organization(self, org_id: uuid.UUID) -> None:
        """Hard delete; only used to compensate a failed create."""

    @abc.abstractmethod
    async def insert_user(self, user: UserSnapshot) -> None:
        ...

    @abc.abstractmethod
    async def delete_user(self, user_id: uuid.UUID) -> None:
        """Hard delete; only used to compensate a failed registration."""

    @abc.abstractmethod
    async def write_organization_members(
        self,
        org_id: uuid.UUID,
        members: list[MemberEntry],
        *,
        expected_version: int,
    ) -> int:
        ...

    @abc.abstractmethod
    async def write_user_organizations(
        self,
        user_id: uuid.UUID,
        organizations: list[UserOrgEntry],
        current: Optional[uuid.UUID],
        *,
        expected_version: int,
    ) -> int:
        ...

    @abc.abstractmethod
    async def run_transaction(self, fn: TransactionFn[T]) -> T:
        """Run ``fn(tx)`` so that its writes apply all-or-nothing."""


# ---------------------------------------------------------------------------
# Snapshot conversion
# ---------------------------------------------------------------------------

def _dump_entries(entries: list) -> list[dict]:
    return [entry.model_dump(mode="json") for entry in entries]


def _org_snapshot(row: Organization) -> OrganizationSnapshot:
    return OrganizationSnapshot(
        id=row.id,
        name=row.name,
        description=row.description or "",
        join_code=row.join_code,
        created_by=row.created_by,
        members=[MemberEntry.model_validate(m) for m in row.members or []],
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _user_snapshot(row: User) -> UserSnapshot:
    return UserSnapshot(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        organizations=[UserOrgEntry.model_validate(e) for e in row.organizations or []],
        current_organization=row.current_organization,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


# ---------------------------------------------------------------------------
# SQL adapter
# ---------------------------------------------------------------------------

@contextmanager
def _translate_db_errors() -> Iterator[None]:
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        log.warning("membership.store_unavailable", error=str(exc.orig or exc))
        raise StoreUnavailableError(detail=type(exc).__name__) from exc


class SqlMembershipStore(MembershipStore):
    """SQLModel-backed store. Outside ``run_transaction`` every call uses its
    own short transaction; inside, all calls share the enclosing one."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        session: Optional[AsyncSession] = None,
    ):
        self._session_factory = session_factory
        self._session = session

    @asynccontextmanager
    async def _use_session(self) -> AsyncIterator[AsyncSession]:
        if self._session is not None:
            yield self._session
            return
        with _translate_db_errors():
            async with self._session_factory() as session:
                async with session.begin():
                    yield session

    async def find_organization_by_join_code(self, code: str) -> Optional[OrganizationSnapshot]:
        async with self._use_session() as session:
            result = await session.execute(
                select(Organization).where(Organization.join_code == code.upper())
            )
            row = result.scalar_one_or_none()
            return _org_snapshot(row) if row else None

    async def find_organization_by_id(self, org_id: uuid.UUID) -> Optional[OrganizationSnapshot]:
        async with self._use_session() as session:
            row = await session.get(Organization, org_id, populate_existing=True)
            return _org_snapshot(row) if row else None

    async def find_user_by_id(self, user_id: uuid.UUID) -> Optional[UserSnapshot]:
        async with self._use_session() as session:
            row = await session.get(User, user_id, populate_existing=True)
            return _user_snapshot(row) if row else None

    async def find_user_by_email(self, email: str) -> Optional[UserSnapshot]:
        async with self._use_session() as session:
            result = await session.execute(select(User).where(User.email == email.lower()))
            row = result.scalar_one_or_none()
            return _user_snapshot(row) if row else None

    async def find_users_with_organization(self, org_id: uuid.UUID) -> list[UserSnapshot]:
        # Text match narrows the scan on both SQLite and Postgres; the exact
        # check happens on the parsed entries.
        async with self._use_session() as session:
            result = await session.execute(
                select(User).where(
                    sa.or_(
                        sa.cast(User.organizations, sa.Text).contains(str(org_id)),
                        User.current_organization == org_id,
                    )
                )
            )
            users = [_user_snapshot(row) for row in result.scalars().all()]
        return [
            u for u in users
            if u.entry_for(org_id) is not None or u.current_organization == org_id
        ]

    async def list_organization_ids(self) -> list[uuid.UUID]:
        async with self._use_session() as session:
            result = await session.execute(select(Organization.id))
            return list(result.scalars().all())

    async def list_user_ids(self) -> list[uuid.UUID]:
        async with self._use_session() as session:
            result = await session.execute(select(User.id))
            return list(result.scalars().all())

    async def insert_organization(self, org: OrganizationSnapshot) -> None:
        async with self._use_session() as session:
            row = Organization(
                id=org.id,
                name=org.name,
                description=org.description,
                join_code=org.join_code,
                created_by=org.created_by,
                members=_dump_entries(org.members),
                version=org.version,
            )
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise DuplicateJoinCodeError(join_code=org.join_code) from exc

    async def delete_organization(self, org_id: uuid.UUID) -> None:
        async with self._use_session() as session:
            await session.execute(sa.delete(Organization).where(Organization.id == org_id))

    async def insert_user(self, user: UserSnapshot) -> None:
        async with self._use_session() as session:
            row = User(
                id=user.id,
                email=user.email.lower(),
                name=user.name,
                password_hash=user.password_hash,
                organizations=_dump_entries(user.organizations),
                current_organization=user.current_organization,
                version=user.version,
            )
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise DuplicateEmailError(email=user.email) from exc

    async def delete_user(self, user_id: uuid.UUID) -> None:
        async with self._use_session() as session:
            await session.execute(sa.delete(User).where(User.id == user_id))

    async def write_organization_members(
        self,
        org_id: uuid.UUID,
        members: list[MemberEntry],
        *,
        expected_version: int,
    ) -> int:
        async with self._use_session() as session:
            result = await session.execute(
                sa.update(Organization)
                .where(Organization.id == org_id, Organization.version == expected_version)
                .values(
                    members=_dump_entries(members),
                    version=expected_version + 1,
                    updated_at=_utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConcurrentModificationError(
                    document=StaleSide.ORGANIZATION.value,
                    document_id=str(org_id),
                    expected_version=expected_version,
                )
        return expected_version + 1

    async def write_user_organizations(
        self,
        user_id: uuid.UUID,
        organizations: list[UserOrgEntry],
        current: Optional[uuid.UUID],
        *,
        expected_version: int,
    ) -> int:
        async with self._use_session() as session:
            result = await session.execute(
                sa.update(User)
                .where(User.id == user_id, User.version == expected_version)
                .values(
                    organizations=_dump_entries(organizations),
                    current_organization=current,
                    version=expected_version + 1,
                    updated_at=_utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConcurrentModificationError(
                    document=StaleSide.USER.value,
                    document_id=str(user_id),
                    expected_version=expected_version,
                )
        return expected_version + 1

    async def run_transaction(self, fn: TransactionFn[T]) -> T:
        if self._session is not None:
            return await fn(self)
        with _translate_db_errors():
            async with self._session_factory() as session:
                async with session.begin():
                    return await fn(
                        SqlMembershipStore(self._session_factory, session=session)
                    )


# ---------------------------------------------------------------------------
# Compensating rollback for stores without multi-document transactions
# ---------------------------------------------------------------------------

class CompensatingTransaction(MembershipStore):
    """Journals every write against ``store`` so it can be undone.

    Before-images are read right before each write. ``rollback`` replays the
    undo journal newest-first; each undo is itself a version-guarded write,
    so an undo that races another writer fails instead of clobbering it. A
    failed undo leaves a one-sided edge, which is logged and surfaced as
    ``PartialFailureError`` for ``reconcile`` to repair.
    """

    def __init__(self, store: MembershipStore, *, undo_timeout: Optional[float] = None):
        self._store = store
        self._undo_timeout = undo_timeout
        self._undo: list[tuple[StaleSide, uuid.UUID, Callable[[], Awaitable[Any]]]] = []

    async def find_organization_by_join_code(self, code: str) -> Optional[OrganizationSnapshot]:
        return await self._store.find_organization_by_join_code(code)

    async def find_organization_by_id(self, org_id: uuid.UUID) -> Optional[OrganizationSnapshot]:
        return await self._store.find_organization_by_id(org_id)

    async def find_user_by_id(self, user_id: uuid.UUID) -> Optional[UserSnapshot]:
        return await self._store.find_user_by_id(user_id)

    async def find_user_by_email(self, email: str) -> Optional[UserSnapshot]:
        return await self._store.find_user_by_email(email)

    async def find_users_with_organization(self, org_id: uuid.UUID) -> list[UserSnapshot]:
        return await self._store.find_users_with_organization(org_id)

    async def list_organization_ids(self) -> list[uuid.UUID]:
        return await self._store.list_organization_ids()

    async def list_user_ids(self) -> list[uuid.UUID]:
        return await self._store.list_user_ids()

    async def insert_organization(self, org: OrganizationSnapshot) -> None:
        await self._store.insert_organization(org)
        self._undo.append(
            (StaleSide.ORGANIZATION, org.id, lambda: self._store.delete_organization(org.id))
        )

    async def delete_organization(self, org_id: uuid.UUID) -> None:
        await self._store.delete_organization(org_id)

    async def insert_user(self, user: UserSnapshot) -> None:
        await self._store.insert_user(user)
        self._undo.append((StaleSide.USER, user.id, lambda: self._store.delete_user(user.id)))

    async def delete_user(self, user_id: uuid.UUID) -> None:
        await self._store.delete_user(user_id)

    async def write_organization_members(
        self,
        org_id: uuid.UUID,
        members: list[MemberEntry],
        *,
        expected_version: int,
    ) -> int:
        before = await self._store.find_organization_by_id(org_id)
        if before is None or before.version != expected_version:
            raise ConcurrentModificationError(
                document=StaleSide.ORGANIZATION.value,
                document_id=str(org_id),
                expected_version=expected_version,
            )
        new_version = await self._store.write_organization_members(
            org_id, members, expected_version=expected_version
        )
        self._undo.append(
            (
                StaleSide.ORGANIZATION,
                org_id,
                lambda: self._store.write_organization_members(
                    org_id, before.members, expected_version=new_version
                ),
            )
        )
        return new_version

    async def write_user_organizations(
        self,
        user_id: uuid.UUID,
        organizations: list[UserOrgEntry],
        current: Optional[uuid.UUID],
        *,
        expected_version: int,
    ) -> int:
        before = await self._store.find_user_by_id(user_id)
        if before is None or before.version != expected_version:
            raise ConcurrentModificationError(
                document=StaleSide.USER.value,
                document_id=str(user_id),
                expected_version=expected_version,
            )
        new_version = await self._store.write_user_organizations(
            user_id, organizations, current, expected_version=expected_version
        )
        self._undo.append(
            (
                StaleSide.USER,
                user_id,
                lambda: self._store.write_user_organizations(
                    user_id,
                    before.organizations,
                    before.current_organization,
                    expected_version=new_version,
                ),
            )
        )
        return new_version

    async def run_transaction(self, fn: TransactionFn[T]) -> T:
        # Nested transactions share this journal.
        return await fn(self)

    async def rollback(self) -> None:
        failure: Optional[PartialFailureError] = None
        while self._undo:
            side, document_id, undo = self._undo.pop()
            try:
                if self._undo_timeout is None:
                    await undo()
                else:
                    await asyncio.wait_for(undo(), self._undo_timeout)
            except (MembershipError, asyncio.TimeoutError) as exc:
                log.error(
                    "membership.rollback_failed",
                    stale_side=side.value,
                    document_id=str(document_id),
                    error=type(exc).__name__,
                )
                if failure is None:
                    failure = PartialFailureError(stale_side=side.value, document_id=document_id)
                    failure.__cause__ = exc
        if failure is not None:
            raise failure


# ---------------------------------------------------------------------------
# In-memory document adapter
# ---------------------------------------------------------------------------

class MemoryMembershipStore(MembershipStore):
    """Users and Organizations held as in-process documents.

    Single-document writes are atomic and version-checked; there are no
    multi-document transactions, so ``run_transaction`` compensates.
    Transactions run one at a time, so a compensating undo never races
    another membership write.
    ``latency`` simulates I/O by yielding to the event loop on every call.
    """

    def __init__(self, *, latency: float = 0.0, undo_timeout: Optional[float] = None):
        self.organizations: dict[uuid.UUID, OrganizationSnapshot] = {}
        self.users: dict[uuid.UUID, UserSnapshot] = {}
        self._latency = latency
        self._undo_timeout = undo_timeout
        self._transaction_lock = asyncio.Lock()

    async def _io(self) -> None:
        await asyncio.sleep(self._latency)

    async def find_organization_by_join_code(self, code: str) -> Optional[OrganizationSnapshot]:
        await self._io()
        code = code.upper()
        for org in self.organizations.values():
            if org.join_code.upper() == code:
                return org.model_copy(deep=True)
        return None

    async def find_organization_by_id(self, org_id: uuid.UUID) -> Optional[OrganizationSnapshot]:
        await self._io()
        org = self.organizations.get(org_id)
        return org.model_copy(deep=True) if org else None

    async def find_user_by_id(self, user_id: uuid.UUID) -> Optional[UserSnapshot]:
        await self._io()
        user = self.users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def find_user_by_email(self, email: str) -> Optional[UserSnapshot]:
        await self._io()
        email = email.lower()
        for user in self.users.values():
            if user.email == email:
                return user.model_copy(deep=True)
        return None

    async def find_users_with_organization(self, org_id: uuid.UUID) -> list[UserSnapshot]:
        await self._io()
        return [
            user.model_copy(deep=True)
            for user in self.users.values()
            if user.entry_for(org_id) is not None or user.current_organization == org_id
        ]

    async def list_organization_ids(self) -> list[uuid.UUID]:
        await self._io()
        return list(self.organizations)

    async def list_user_ids(self) -> list[uuid.UUID]:
        await self._io()
        return list(self.users)

    async def insert_organization(self, org: OrganizationSnapshot) -> None:
        await self._io()
        if any(o.join_code.upper() == org.join_code.upper() for o in self.organizations.values()):
            raise DuplicateJoinCodeError(join_code=org.join_code)
        now = _utcnow()
        self.organizations[org.id] = org.model_copy(
            update={"created_at": org.created_at or now, "updated_at": now}, deep=True
        )

    async def delete_organization(self, org_id: uuid.UUID) -> None:
        await self._io()
        self.organizations.pop(org_id, None)

    async def insert_user(self, user: UserSnapshot) -> None:
        await self._io()
        email = user.email.lower()
        if any(u.email == email for u in self.users.values()):
            raise DuplicateEmailError(email=user.email)
        now = _utcnow()
        self.users[user.id] = user.model_copy(
            update={"email": email, "created_at": user.created_at or now, "updated_at": now},
            deep=True,
        )

    async def delete_user(self, user_id: uuid.UUID) -> None:
        await self._io()
        self.users.pop(user_id, None)

    async def write_organization_members(
        self,
        org_id: uuid.UUID,
        members: list[MemberEntry],
        *,
        expected_version: int,
    ) -> int:
        await self._io()
        current = self.organizations.get(org_id)
        if current is None or current.version != expected_version:
            raise ConcurrentModificationError(
                document=StaleSide.ORGANIZATION.value,
                document_id=str(org_id),
                expected_version=expected_version,
            )
        self.organizations[org_id] = current.model_copy(
            update={
                "members": [m.model_copy() for m in members],
                "version": expected_version + 1,
                "updated_at": _utcnow(),
            }
        )
        return expected_version + 1

    async def write_user_organizations(
        self,
        user_id: uuid.UUID,
        organizations: list[UserOrgEntry],
        current: Optional[uuid.UUID],
        *,
        expected_version: int,
    ) -> int:
        await self._io()
        existing = self.users.get(user_id)
        if existing is None or existing.version != expected_version:
            raise ConcurrentModificationError(
                document=StaleSide.USER.value,
                document_id=str(user_id),
                expected_version=expected_version,
            )
        self.users[user_id] = existing.model_copy(
            update={
                "organizations": [e.model_copy() for e in organizations],
                "current_organization": current,
                "version": expected_version + 1,
                "updated_at": _utcnow(),
            }
        )
        return expected_version + 1

    async def run_transaction(self, fn: TransactionFn[T]) -> T:
        async with self._transaction_lock:
            tx = CompensatingTransaction(self, undo_timeout=self._undo_timeout)
            try:
                return await fn(tx)
            except BaseException:
                await tx.rollback()
                raise


# ---------------------------------------------------------------------------
# Per-call timeouts
# ---------------------------------------------------------------------------

class BoundedStore(MembershipStore):
    """Bounds every call on ``store`` by ``timeout`` seconds.

    Expiry raises ``StoreTimeoutError``; inside ``run_transaction`` that
    aborts the attempt, so the transaction rolls back or compensates.
    """

    def __init__(self, store: MembershipStore, timeout: Optional[float]):
        self._store = store
        self._timeout = timeout

    async def _call(self, operation: str, coro: Awaitable[T]) -> T:
        if self._timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, self._timeout)
        except asyncio.TimeoutError as exc:
            log.warning("membership.store_timeout", operation=operation, timeout=self._timeout)
            raise StoreTimeoutError(operation=operation, timeout=self._timeout) from exc

    async def find_organization_by_join_code(self, code: str) -> Optional[OrganizationSnapshot]:
        return await self._call(
            "find_organization_by_join_code", self._store.find_organization_by_join_code(code)
        )

    async def find_organization_by_id(self, org_id: uuid.UUID) -> Optional[OrganizationSnapshot]:
        return await self._call(
            "find_organization_by_id", self._store.find_organization_by_id(org_id)
        )

    async def find_user_by_id(self, user_id: uuid.UUID) -> Optional[UserSnapshot]:
        return await self._call("find_user_by_id", self._store.find_user_by_id(user_id))

    async def find_user_by_email(self, email: str) -> Optional[UserSnapshot]:
        return await self._call("find_user_by_email", self._store.find_user_by_email(email))

    async def find_users_with_organization(self, org_id: uuid.UUID) -> list[UserSnapshot]:
        return await self._call(
            "find_users_with_organization", self._store.find_users_with_organization(org_id)
        )

    async def list_organization_ids(self) -> list[uuid.UUID]:
        return await self._call("list_organization_ids", self._store.list_organization_ids())

    async def list_user_ids(self) -> list[uuid.UUID]:
        return await self._call("list_user_ids", self._store.list_user_ids())

    async def insert_organization(self, org: OrganizationSnapshot) -> None:
        await self._call("insert_organization", self._store.insert_organization(org))

    async def delete_organization(self, org_id: uuid.UUID) -> None:
        await self._call("delete_organization", self._store.delete_organization(org_id))

    async def insert_user(self, user: UserSnapshot) -> None:
        await self._call("insert_user", self._store.insert_user(user))

    async def delete_user(self, user_id: uuid.UUID) -> None:
        await self._call("delete_user", self._store.delete_user(user_id))

    async def write_organization_members(
        self,
        org_id: uuid.UUID,
        members: list[MemberEntry],
        *,
        expected_version: int,
    ) -> int:
        return await self._call(
            "write_organization_members",
            self._store.write_organization_members(
                org_id, members, expected_version=expected_version
            ),
        )

    async def write_user_organizations(
        self,
        user_id: uuid.UUID,
        organizations: list[UserOrgEntry],
        current: Optional[uuid.UUID],
        *,
        expected_version: int,
    ) -> int:
        return await self._call(
            "write_user_organizations",
            self._store.write_user_organizations(
                user_id, organizations, current, expected_version=expected_version
            ),
        )

    async def run_transaction(self, fn: TransactionFn[T]) -> T:
        return await self._store.run_transaction(
            lambda tx: fn(BoundedStore(tx, self._timeout))
        )
