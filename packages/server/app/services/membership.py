"""
Membership service: the only code path that writes membership edges.

An edge (user u belongs to organization o) is stored twice: as a row in
``o.members`` and as an entry in ``u.organizations``. Every operation here
reads both documents, decides, and writes inside one
``store.run_transaction`` attempt, so after each call the two sides agree.
Version conflicts and store outages abort the attempt and are retried.
"""

from __future__ import annotations

import asyncio
import re
import secrets
import string
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar, Union

import structlog

from app.core.config import get_settings
from app.core.events import (
    CURRENT_ORGANIZATION_CHANGED,
    MEMBER_JOINED,
    MEMBER_LEFT,
    MEMBERSHIP_REPAIRED,
    ORGANIZATION_CREATED,
    MembershipEvent,
    MembershipPublisher,
)
from app.core.exceptions import (
    DuplicateJoinCodeError,
    InvalidAttributesError,
    MembershipError,
    NotAMemberError,
    OrganizationNotFoundError,
    PartialFailureError,
    UserNotFoundError,
)
from app.services.membership_store import BoundedStore, MembershipStore
from foundly_shared.schemas.common import (
    GENERATED_JOIN_CODE_LENGTH,
    JOIN_CODE_PATTERN,
    JoinOutcome,
    MemberRole,
)
from foundly_shared.schemas.organizations import (
    MemberEntry,
    OrgAttributes,
    OrgListItem,
    OrganizationSnapshot,
    RepairReport,
)
from foundly_shared.schemas.users import UserOrgEntry, UserSnapshot

log = structlog.get_logger()

T = TypeVar("T")

JOIN_CODE_RE = re.compile(JOIN_CODE_PATTERN)
JOIN_CODE_ALPHABET = string.ascii_uppercase + string.digits
ORG_NAME_MAX_LENGTH = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_join_code(code: str) -> str:
    """Join codes are case-insensitive: trim and uppercase."""
    return code.strip().upper()


def generate_join_code(length: int = GENERATED_JOIN_CODE_LENGTH) -> str:
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(length))


def _dedupe_entries(entries: list[UserOrgEntry]) -> list[UserOrgEntry]:
    seen: set[uuid.UUID] = set()
    unique = []
    for entry in entries:
        if entry.organization_id in seen:
            continue
        seen.add(entry.organization_id)
        unique.append(entry)
    return unique


@dataclass(frozen=True)
class JoinResult:
    organization: OrganizationSnapshot
    outcome: JoinOutcome


class MembershipService:
    """Sole mutator of membership edges.

    Args:
        store: persistence adapter.
        max_attempts: attempts per operation for transient failures
            (``ConcurrentModificationError``, ``StoreUnavailableError``).
        retry_backoff: seconds; attempt ``n`` sleeps ``n * retry_backoff``.
        timeout: default per-call store timeout in seconds; every public
            method also takes a ``timeout`` override.
        join_code_attempts: tries at generating an unused join code.
        publisher: receives a ``MembershipEvent`` after each successful write.
        code_generator: produces candidate join codes.
    """

    def __init__(
        self,
        store: MembershipStore,
        *,
        max_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        timeout: Optional[float] = None,
        join_code_attempts: Optional[int] = None,
        publisher: Optional[MembershipPublisher] = None,
        code_generator: Callable[[], str] = generate_join_code,
    ):
        settings = get_settings()
        self._store = store
        self._max_attempts = max_attempts or settings.membership_max_attempts
        self._retry_backoff = (
            settings.membership_retry_backoff_seconds if retry_backoff is None else retry_backoff
        )
        self._timeout = settings.membership_store_timeout_seconds if timeout is None else timeout
        self._join_code_attempts = join_code_attempts or settings.join_code_generation_attempts
        self._publisher = publisher
        self._code_generator = code_generator

    # ------------------------------------------------------------------
    # Write discipline
    # ------------------------------------------------------------------

    async def _run(
        self,
        operation: str,
        fn: Callable[[MembershipStore], Awaitable[T]],
        *,
        timeout: Optional[float],
        **context: Any,
    ) -> T:
        """Run ``fn`` in a store transaction, retrying transient failures."""
        store = BoundedStore(self._store, self._timeout if timeout is None else timeout)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await store.run_transaction(fn)
            except PartialFailureError as exc:
                log.error(
                    "membership.partial_failure",
                    operation=operation,
                    stale_side=exc.stale_side,
                    document_id=str(exc.document_id),
                    **context,
                )
                raise
            except MembershipError as exc:
                if not exc.transient:
                    raise
                if attempt >= self._max_attempts:
                    log.warning(
                        "membership.retries_exhausted",
                        operation=operation,
                        attempts=attempt,
                        error=exc.code,
                        **context,
                    )
                    raise
                log.info(
                    "membership.retry",
                    operation=operation,
                    attempt=attempt,
                    error=exc.code,
                    **context,
                )
                await asyncio.sleep(self._retry_backoff * attempt)

    async def _emit(self, event: MembershipEvent) -> None:
        if self._publisher is None:
            return
        # The write is already committed.
        try:
            await self._publisher(event)
        except Exception:
            log.exception("membership.event_publish_failed", type=event.type)

    # ------------------------------------------------------------------
    # create_with_owner
    # ------------------------------------------------------------------

    def _validate_attributes(self, attrs: OrgAttributes) -> tuple[str, Optional[str]]:
        name = attrs.name.strip()
        if not name:
            raise InvalidAttributesError("Organization name is required.", field="name")
        if len(name) > ORG_NAME_MAX_LENGTH:
            raise InvalidAttributesError(
                f"Organization name must be at most {ORG_NAME_MAX_LENGTH} characters.",
                field="name",
            )
        if attrs.join_code is None or not attrs.join_code.strip():
            return name, None
        code = normalize_join_code(attrs.join_code)
        if not JOIN_CODE_RE.fullmatch(code):
            raise InvalidAttributesError(
                "Join code must be 6-10 letters or digits.", field="join_code"
            )
        return name, code

    async def _generate_unused_code(self, tx: MembershipStore) -> str:
        for _ in range(self._join_code_attempts):
            code = normalize_join_code(self._code_generator())
            if await tx.find_organization_by_join_code(code) is None:
                return code
            log.info("membership.join_code_collision", join_code=code)
        raise DuplicateJoinCodeError(
            "Could not generate a unique join code. Please try again.",
            attempts=self._join_code_attempts,
        )

    async def create_with_owner(
        self,
        owner_user_id: uuid.UUID,
        attrs: Union[OrgAttributes, dict],
        *,
        timeout: Optional[float] = None,
    ) -> OrganizationSnapshot:
        """Create an organization whose founding user is its first admin.

        The owner's ``organizations`` gains an admin entry and their current
        organization becomes the new one. Both writes happen or neither does.
        """
        if isinstance(attrs, dict):
            attrs = OrgAttributes.model_validate(attrs)
        name, custom_code = self._validate_attributes(attrs)
        description = attrs.description.strip()

        async def attempt(tx: MembershipStore) -> OrganizationSnapshot:
            owner = await tx.find_user_by_id(owner_user_id)
            if owner is None:
                raise UserNotFoundError(user_id=str(owner_user_id))

            if custom_code is not None:
                if await tx.find_organization_by_join_code(custom_code) is not None:
                    raise DuplicateJoinCodeError(join_code=custom_code)
                code = custom_code
            else:
                code = await self._generate_unused_code(tx)

            now = _utcnow()
            org = OrganizationSnapshot(
                id=uuid.uuid4(),
                name=name,
                description=description,
                join_code=code,
                created_by=owner.id,
                members=[
                    MemberEntry(user_id=owner.id, role=MemberRole.ADMIN, joined_at=now, is_active=True)
                ],
                version=1,
                created_at=now,
                updated_at=now,
            )
            await tx.insert_organization(org)
            organizations = owner.organizations + [
                UserOrgEntry(organization_id=org.id, role=MemberRole.ADMIN, joined_at=now)
            ]
            await tx.write_user_organizations(
                owner.id, organizations, org.id, expected_version=owner.version
            )
            return org

        org = await self._run(
            "create_with_owner", attempt, timeout=timeout, user_id=str(owner_user_id)
        )
        log.info(
            "membership.organization_created",
            org_id=str(org.id),
            join_code=org.join_code,
            owner=str(owner_user_id),
        )
        await self._emit(
            MembershipEvent(
                type=ORGANIZATION_CREATED,
                organization_id=org.id,
                user_id=owner_user_id,
                payload={"role": MemberRole.ADMIN.value},
            )
        )
        return org

    # ------------------------------------------------------------------
    # join
    # ------------------------------------------------------------------

    async def join(
        self,
        user_id: uuid.UUID,
        join_code: str,
        *,
        timeout: Optional[float] = None,
    ) -> JoinResult:
        """Join the organization behind ``join_code`` (any case).

        Returns ``alreadyMember`` without writing when both sides already
        hold the edge. A one-sided edge left by an earlier failure is
        completed and reported as ``joined``.
        """
        code = normalize_join_code(join_code)

        async def attempt(tx: MembershipStore) -> tuple[JoinResult, bool]:
            org = await tx.find_organization_by_join_code(code) if code else None
            if org is None:
                raise OrganizationNotFoundError(join_code=code)
            user = await tx.find_user_by_id(user_id)
            if user is None:
                raise UserNotFoundError(user_id=str(user_id))

            member = org.member_for(user.id)
            entry = user.entry_for(org.id)
            if member is not None and entry is not None:
                return JoinResult(org, JoinOutcome.ALREADY_MEMBER), False

            repaired = member is not None or entry is not None
            now = _utcnow()
            if member is not None:
                role, joined_at = member.role, member.joined_at
            elif entry is not None:
                role, joined_at = entry.role, entry.joined_at
            else:
                role, joined_at = MemberRole.MEMBER, now

            # Both documents are written, even the side that already holds
            # the edge, so a concurrent writer to either one conflicts.
            members = list(org.members)
            if member is None:
                members.append(
                    MemberEntry(user_id=user.id, role=role, joined_at=joined_at, is_active=True)
                )
            version = await tx.write_organization_members(
                org.id, members, expected_version=org.version
            )
            org = org.model_copy(update={"members": members, "version": version})

            organizations = list(user.organizations)
            if entry is None:
                organizations.append(
                    UserOrgEntry(organization_id=org.id, role=role, joined_at=joined_at)
                )
            await tx.write_user_organizations(
                user.id,
                organizations,
                user.current_organization or org.id,
                expected_version=user.version,
            )
            return JoinResult(org, JoinOutcome.JOINED), repaired

        result, repaired = await self._run(
            "join", attempt, timeout=timeout, user_id=str(user_id), join_code=code
        )
        if result.outcome is JoinOutcome.ALREADY_MEMBER:
            log.info("membership.already_member", user_id=str(user_id), org_id=str(result.organization.id))
            return result

        log.info(
            "membership.joined",
            user_id=str(user_id),
            org_id=str(result.organization.id),
            repaired=repaired,
            member_count=result.organization.member_count,
        )
        await self._emit(
            MembershipEvent(
                type=MEMBER_JOINED,
                organization_id=result.organization.id,
                user_id=user_id,
                payload={"repaired": repaired},
            )
        )
        return result

    # ------------------------------------------------------------------
    # leave
    # ------------------------------------------------------------------

    async def leave(
        self,
        user_id: uuid.UUID,
        organization_id: uuid.UUID,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        """Remove the edge from both sides. Leaving something you are not a
        member of is a no-op. If it was the current organization, the first
        remaining one (or none) becomes current."""

        async def attempt(tx: MembershipStore) -> bool:
            org = await tx.find_organization_by_id(organization_id)
            user = await tx.find_user_by_id(user_id)
            has_row = org is not None and org.member_for(user_id) is not None
            has_entry = user is not None and user.entry_for(organization_id) is not None
            points_here = user is not None and user.current_organization == organization_id
            if not (has_row or has_entry or points_here):
                return False

            # Either side of the edge present: write both documents so a
            # concurrent join of the same pair conflicts on one of them.
            if org is not None and (has_row or has_entry):
                members = [m for m in org.members if m.user_id != user_id]
                await tx.write_organization_members(
                    org.id, members, expected_version=org.version
                )

            if user is not None:
                organizations = [
                    e for e in user.organizations if e.organization_id != organization_id
                ]
                current = user.current_organization
                if current == organization_id:
                    current = organizations[0].organization_id if organizations else None
                await tx.write_user_organizations(
                    user.id, organizations, current, expected_version=user.version
                )
            return True

        removed = await self._run(
            "leave", attempt, timeout=timeout, user_id=str(user_id), org_id=str(organization_id)
        )
        if not removed:
            log.info("membership.leave_noop", user_id=str(user_id), org_id=str(organization_id))
            return
        log.info("membership.left", user_id=str(user_id), org_id=str(organization_id))
        await self._emit(
            MembershipEvent(type=MEMBER_LEFT, organization_id=organization_id, user_id=user_id)
        )

    # ------------------------------------------------------------------
    # set_current
    # ------------------------------------------------------------------

    async def set_current(
        self,
        user_id: uuid.UUID,
        organization_id: uuid.UUID,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        async def attempt(tx: MembershipStore) -> bool:
            user = await tx.find_user_by_id(user_id)
            if user is None:
                raise UserNotFoundError(user_id=str(user_id))
            if user.entry_for(organization_id) is None:
                raise NotAMemberError(user_id=str(user_id), organization_id=str(organization_id))
            if user.current_organization == organization_id:
                return False
            await tx.write_user_organizations(
                user.id, user.organizations, organization_id, expected_version=user.version
            )
            return True

        changed = await self._run(
            "set_current", attempt, timeout=timeout, user_id=str(user_id), org_id=str(organization_id)
        )
        if changed:
            log.info("membership.current_changed", user_id=str(user_id), org_id=str(organization_id))
            await self._emit(
                MembershipEvent(
                    type=CURRENT_ORGANIZATION_CHANGED,
                    organization_id=organization_id,
                    user_id=user_id,
                )
            )

    # ------------------------------------------------------------------
    # reconcile
    # ------------------------------------------------------------------

    async def _reconcile_once(
        self, tx: MembershipStore, organization_id: uuid.UUID
    ) -> RepairReport:
        report = RepairReport(organization_id=organization_id)
        org = await tx.find_organization_by_id(organization_id)
        if org is None:
            raise OrganizationNotFoundError(
                "Organization not found.", organization_id=str(organization_id)
            )

        # Organization side: drop duplicate rows and rows for deleted users.
        users: dict[uuid.UUID, UserSnapshot] = {}
        seen: set[uuid.UUID] = set()
        members: list[MemberEntry] = []
        for member in org.members:
            if member.user_id in seen:
                report.duplicate_members_removed += 1
                continue
            seen.add(member.user_id)
            user = await tx.find_user_by_id(member.user_id)
            if user is None:
                report.orphaned_members_removed.append(member.user_id)
                continue
            users[user.id] = user
            members.append(member)

        # users -> org: entries without a member row. Users that only point
        # at this org as current are collected for the pointer reset below.
        kept = {m.user_id for m in members}
        for user in await tx.find_users_with_organization(org.id):
            users.setdefault(user.id, user)
            entry = user.entry_for(org.id)
            if user.id in kept or entry is None:
                continue
            members.append(
                MemberEntry(user_id=user.id, role=entry.role, joined_at=entry.joined_at)
            )
            kept.add(user.id)
            report.members_missing_row.append(user.id)

        # org -> users: member rows without an entry, plus per-user cleanup.
        user_writes = []
        for user in users.values():
            organizations = _dedupe_entries(user.organizations)
            report.duplicate_entries_removed += len(user.organizations) - len(organizations)
            member = next((m for m in members if m.user_id == user.id), None)
            if member is not None and user.entry_for(org.id) is None:
                organizations.append(
                    UserOrgEntry(
                        organization_id=org.id, role=member.role, joined_at=member.joined_at
                    )
                )
                report.users_missing_entry.append(user.id)
            current = user.current_organization
            if current is not None and all(e.organization_id != current for e in organizations):
                current = organizations[0].organization_id if organizations else None
                report.current_organization_reset.append(user.id)
            if organizations != user.organizations or current != user.current_organization:
                user_writes.append((user, organizations, current))

        # The organization is rewritten whenever any user is, so a concurrent
        # join or leave on this org conflicts instead of interleaving.
        if members != org.members or user_writes:
            await tx.write_organization_members(org.id, members, expected_version=org.version)
        for user, organizations, current in user_writes:
            await tx.write_user_organizations(
                user.id, organizations, current, expected_version=user.version
            )
        return report

    async def reconcile(
        self,
        organization_id: uuid.UUID,
        *,
        timeout: Optional[float] = None,
    ) -> RepairReport:
        """Find and repair one-sided edges for one organization.

        Safe to run at any time; writes nothing when already consistent.
        """
        report = await self._run(
            "reconcile",
            lambda tx: self._reconcile_once(tx, organization_id),
            timeout=timeout,
            org_id=str(organization_id),
        )
        if report.repaired:
            log.warning(
                "membership.repaired",
                org_id=str(organization_id),
                report=report.model_dump(mode="json"),
            )
            await self._emit(
                MembershipEvent(
                    type=MEMBERSHIP_REPAIRED,
                    organization_id=organization_id,
                    payload=report.model_dump(mode="json"),
                )
            )
        else:
            log.info("membership.consistent", org_id=str(organization_id))
        return report

    async def _sweep_user(
        self, tx: MembershipStore, user_id: uuid.UUID, summary: RepairReport
    ) -> None:
        user = await tx.find_user_by_id(user_id)
        if user is None:
            return
        organizations = []
        for entry in _dedupe_entries(user.organizations):
            if await tx.find_organization_by_id(entry.organization_id) is None:
                summary.orphaned_user_entries.append(entry.organization_id)
                continue
            organizations.append(entry)
        current = user.current_organization
        if current is not None and all(e.organization_id != current for e in organizations):
            current = organizations[0].organization_id if organizations else None
            summary.current_organization_reset.append(user.id)
        if organizations != user.organizations or current != user.current_organization:
            summary.duplicate_entries_removed += len(user.organizations) - len(
                _dedupe_entries(user.organizations)
            )
            await tx.write_user_organizations(
                user.id, organizations, current, expected_version=user.version
            )

    async def reconcile_all(self, *, timeout: Optional[float] = None) -> list[RepairReport]:
        """Reconcile every organization, then drop user entries that point at
        organizations that no longer exist.

        The last report (``organization_id`` None) summarizes the user sweep.
        """
        store = BoundedStore(self._store, self._timeout if timeout is None else timeout)
        reports = []
        for org_id in await store.list_organization_ids():
            try:
                reports.append(await self.reconcile(org_id, timeout=timeout))
            except OrganizationNotFoundError:
                log.info("membership.reconcile_skipped", org_id=str(org_id))

        summary = RepairReport(organization_id=None)
        for user_id in await store.list_user_ids():
            # Fresh counters per attempt so a retried sweep is not double counted.
            async def sweep(tx: MembershipStore, user_id: uuid.UUID = user_id) -> RepairReport:
                partial = RepairReport(organization_id=None)
                await self._sweep_user(tx, user_id, partial)
                return partial

            partial = await self._run("reconcile_user", sweep, timeout=timeout, user_id=str(user_id))
            summary.orphaned_user_entries.extend(partial.orphaned_user_entries)
            summary.current_organization_reset.extend(partial.current_organization_reset)
            summary.duplicate_entries_removed += partial.duplicate_entries_removed
        reports.append(summary)

        log.info(
            "membership.reconcile_all_finished",
            organizations=len(reports) - 1,
            repaired=sum(1 for r in reports if r.repaired),
        )
        return reports

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_organization(
        self, organization_id: uuid.UUID, *, timeout: Optional[float] = None
    ) -> OrganizationSnapshot:
        async def read(tx: MembershipStore) -> OrganizationSnapshot:
            org = await tx.find_organization_by_id(organization_id)
            if org is None:
                raise OrganizationNotFoundError(
                    "Organization not found.", organization_id=str(organization_id)
                )
            return org

        return await self._run("get_organization", read, timeout=timeout)

    async def get_user(self, user_id: uuid.UUID, *, timeout: Optional[float] = None) -> UserSnapshot:
        async def read(tx: MembershipStore) -> UserSnapshot:
            user = await tx.find_user_by_id(user_id)
            if user is None:
                raise UserNotFoundError(user_id=str(user_id))
            return user

        return await self._run("get_user", read, timeout=timeout)

    async def list_user_organizations(
        self, user_id: uuid.UUID, *, timeout: Optional[float] = None
    ) -> list[OrgListItem]:
        """The user's organizations with their role, member count and which
        one is current."""

        async def read(tx: MembershipStore) -> list[OrgListItem]:
            user = await tx.find_user_by_id(user_id)
            if user is None:
                raise UserNotFoundError(user_id=str(user_id))
            items = []
            for entry in _dedupe_entries(user.organizations):
                org = await tx.find_organization_by_id(entry.organization_id)
                if org is None:
                    continue
                items.append(
                    OrgListItem(
                        id=org.id,
                        name=org.name,
                        description=org.description,
                        join_code=org.join_code,
                        role=entry.role,
                        member_count=org.member_count,
                        is_current=org.id == user.current_organization,
                    )
                )
            return items

        return await self._run("list_user_organizations", read, timeout=timeout)
