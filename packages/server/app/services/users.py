"""
User service: account registration and password login.

New users start with no organizations and no current organization; all
membership changes go through ``MembershipService``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog

from app.core.auth import hash_password, verify_password
from app.core.config import get_settings
from app.core.exceptions import DuplicateEmailError
from app.services.membership_store import BoundedStore, MembershipStore
from foundly_shared.schemas.users import UserRegisterRequest, UserSnapshot

log = structlog.get_logger()


async def register_user(
    req: UserRegisterRequest,
    store: MembershipStore,
    *,
    timeout: Optional[float] = None,
) -> UserSnapshot:
    """Create a user. Emails are unique, compared case-insensitively."""
    email = str(req.email).strip().lower()
    if timeout is None:
        timeout = get_settings().membership_store_timeout_seconds
    bounded = BoundedStore(store, timeout)

    async def create(tx: MembershipStore) -> UserSnapshot:
        if await tx.find_user_by_email(email) is not None:
            raise DuplicateEmailError(email=email)
        now = datetime.now(timezone.utc)
        user = UserSnapshot(
            id=uuid.uuid4(),
            email=email,
            name=req.name.strip(),
            password_hash=hash_password(req.password),
            organizations=[],
            current_organization=None,
            version=1,
            created_at=now,
            updated_at=now,
        )
        await tx.insert_user(user)
        return user

    user = await bounded.run_transaction(create)
    log.info("user.registered", user_id=str(user.id))
    return user


async def authenticate_user(
    email: str,
    password: str,
    store: MembershipStore,
    *,
    timeout: Optional[float] = None,
) -> Optional[UserSnapshot]:
    """The user for these credentials, or None."""
    if timeout is None:
        timeout = get_settings().membership_store_timeout_seconds
    user = await BoundedStore(store, timeout).find_user_by_email(email.strip().lower())
    if user is None or not user.password_hash:
        log.info("auth.login_failure", reason="unknown_user")
        return None
    if not verify_password(password, user.password_hash):
        log.warning("auth.login_failure", user_id=str(user.id), reason="bad_password")
        return None
    return user
