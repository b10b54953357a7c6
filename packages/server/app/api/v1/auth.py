"""
Account endpoints.

POST /auth/register — Create a user account
POST /auth/login    — Email/password login, sets the session cookie
POST /auth/logout   — Clear the session cookie
GET  /auth/me       — The caller's user document (memberships, current org)
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response

from app.core.auth import SESSION_COOKIE, create_jwt, get_authenticated_user
from app.core.config import get_settings
from app.core.database import get_membership_store
from app.services import users as user_service
from app.services.membership_store import MembershipStore
from foundly_shared.schemas.common import MessageResponse
from foundly_shared.schemas.users import (
    AuthResponse,
    LoginRequest,
    UserRegisterRequest,
    UserResponse,
    UserSnapshot,
)

log = structlog.get_logger()
settings = get_settings()
router = APIRouter()

# Cookie config
COOKIE_KWARGS = {
    "httponly": True,
    "secure": not settings.debug,  # allow non-HTTPS in dev
    "samesite": "lax",
    "path": "/",
    "max_age": settings.jwt_expire_minutes * 60,
}


def _user_response(user: UserSnapshot) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        organizations=user.organizations,
        current_organization=user.current_organization,
        created_at=user.created_at,
    )


@router.post("/register", response_model=UserResponse, status_code=201)
async def register(
    body: UserRegisterRequest,
    store: MembershipStore = Depends(get_membership_store),
):
    """Register a new user. They start with no organizations."""
    user = await user_service.register_user(body, store)
    return _user_response(user)


@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    response: Response,
    store: MembershipStore = Depends(get_membership_store),
):
    """Authenticate with email/password and receive a JWT session.

    Users without organizations may log in; they create or join one next.
    """
    user = await user_service.authenticate_user(str(body.email), body.password, store)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    token = create_jwt(user.id, user.current_organization)
    response.set_cookie(key=SESSION_COOKIE, value=token, **COOKIE_KWARGS)

    log.info("auth.login_success", user_id=str(user.id))
    return AuthResponse(
        user_id=user.id,
        email=user.email,
        token=token,
        current_organization=user.current_organization,
    )


@router.post("/logout", response_model=MessageResponse)
async def logout(response: Response):
    """Clear the session cookie."""
    response.delete_cookie(SESSION_COOKIE, path="/")
    return MessageResponse(message="Logged out")


@router.get("/me", response_model=UserResponse)
async def me(user: UserSnapshot = Depends(get_authenticated_user)):
    """Return the authenticated user."""
    return _user_response(user)
