"""User schemas: registration and the user side of membership edges."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from .common import MemberRole


# ---------------------------------------------------------------------------
# Membership entries (user side)
# ---------------------------------------------------------------------------

class UserOrgEntry(BaseModel):
    """One entry in ``User.organizations``."""
    organization_id: uuid.UUID
    role: MemberRole = MemberRole.MEMBER
    joined_at: datetime


class UserSnapshot(BaseModel):
    """A User document as read from the store, including its version."""
    id: uuid.UUID
    email: str
    name: str
    password_hash: Optional[str] = None
    organizations: list[UserOrgEntry] = Field(default_factory=list)
    current_organization: Optional[uuid.UUID] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def entry_for(self, organization_id: uuid.UUID) -> Optional[UserOrgEntry]:
        for entry in self.organizations:
            if entry.organization_id == organization_id:
                return entry
        return None


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class UserRegisterRequest(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1, max_length=200)
    password: str = Field(min_length=8, max_length=128)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class UserResponse(BaseModel):
    id: uuid.UUID
    email: str
    name: str
    organizations: list[UserOrgEntry]
    current_organization: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class AuthResponse(BaseModel):
    user_id: uuid.UUID
    email: str
    token: str
    current_organization: Optional[uuid.UUID] = None
    message: str = "Login successful"
