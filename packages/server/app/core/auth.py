"""
Authentication for the Foundly membership API.

Sessions are JWTs issued by ``POST /auth/login``. Requests carry either:
- a JWT (``foundly_session`` cookie or ``Authorization: Bearer <jwt>``)
  whose ``sub`` is the user id, or
- ``Authorization: Bearer <user uuid>`` (local/POC compat).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import APIKeyHeader

from app.core.config import get_settings
from app.core.database import get_membership_service
from app.core.exceptions import UserNotFoundError
from app.services.membership import MembershipService
from foundly_shared.schemas.users import UserSnapshot

log = structlog.get_logger()

SESSION_COOKIE = "foundly_session"

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def hash_password(password: str) -> str:
    """Hash a password using bcrypt with cost factor 12."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=12)).decode()


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against a bcrypt hash."""
    return bcrypt.checkpw(password.encode(), hashed.encode())


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def create_jwt(
    user_id: uuid.UUID,
    current_organization: Optional[uuid.UUID],
    *,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed session JWT for a user."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {
        "sub": str(user_id),
        "current_org": str(current_organization) if current_organization else None,
        "iat": now,
        "exp": exp,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jwt.PyJWTError on failure."""
    settings = get_settings()
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


def _user_id_from_jwt(token: str) -> uuid.UUID:
    try:
        payload = decode_jwt(token)
        return uuid.UUID(payload["sub"])
    except (jwt.PyJWTError, KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid or expired session")


def resolve_user_id(request: Request, authorization: Optional[str]) -> uuid.UUID:
    """Extract the caller's user id from the session cookie or bearer token."""
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        return _user_id_from_jwt(token)

    if authorization and authorization.startswith("Bearer "):
        token_val = authorization[7:].strip()
        # Try as UUID (POC compat)
        try:
            return uuid.UUID(token_val)
        except ValueError:
            pass
        return _user_id_from_jwt(token_val)

    raise HTTPException(status_code=401, detail="Authentication required")


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

async def get_authenticated_user(
    request: Request,
    authorization: Optional[str] = Depends(api_key_header),
    service: MembershipService = Depends(get_membership_service),
) -> UserSnapshot:
    """Main authentication dependency: the caller's current User document."""
    user_id = resolve_user_id(request, authorization)
    try:
        user = await service.get_user(user_id)
    except UserNotFoundError:
        log.info("auth.unknown_user", user_id=str(user_id))
        raise HTTPException(status_code=401, detail="User not found")
    request.state.user_id = user.id
    return user
