"""
Organization-related Pydantic schemas shared between the server and clients.

Covers: the organization side of membership edges, create/join requests,
organization views and the reconcile repair report.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, computed_field

from .common import JoinOutcome, MemberRole


# ---------------------------------------------------------------------------
# Membership entries (organization side)
# ---------------------------------------------------------------------------

class MemberEntry(BaseModel):
    """One row in ``Organization.members``."""
    user_id: uuid.UUID
    role: MemberRole = MemberRole.MEMBER
    joined_at: datetime
    is_active: bool = True


class OrganizationSnapshot(BaseModel):
    """An Organization document as read from the store, including its version."""
    id: uuid.UUID
    name: str
    description: str = ""
    join_code: str
    created_by: uuid.UUID
    members: list[MemberEntry] = Field(default_factory=list)
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def member_count(self) -> int:
        return len(self.members)

    def member_for(self, user_id: uuid.UUID) -> Optional[MemberEntry]:
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None


class OrgAttributes(BaseModel):
    """Attributes accepted by ``create_with_owner``; validated by the service."""
    name: str = ""
    description: str = ""
    join_code: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("join_code", "customJoinCode", "custom_join_code"),
    )


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class OrgCreateRequest(BaseModel):
    name: str = Field(..., max_length=100, description="Organization display name")
    description: str = Field(default="", max_length=2000)
    custom_join_code: Optional[str] = Field(
        default=None,
        alias="customJoinCode",
        description="Optional join code, 6-10 letters or digits, any case",
    )

    model_config = {"populate_by_name": True}

    def to_attributes(self) -> OrgAttributes:
        return OrgAttributes(
            name=self.name,
            description=self.description,
            join_code=self.custom_join_code,
        )


class OrgJoinRequest(BaseModel):
    join_code: str = Field(..., alias="joinCode", max_length=64)

    model_config = {"populate_by_name": True}


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class OrgResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: str
    join_code: str
    created_by: uuid.UUID
    members: list[MemberEntry]
    member_count: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_snapshot(cls, org: OrganizationSnapshot) -> "OrgResponse":
        return cls(
            id=org.id,
            name=org.name,
            description=org.description,
            join_code=org.join_code,
            created_by=org.created_by,
            members=org.members,
            member_count=org.member_count,
            created_at=org.created_at,
            updated_at=org.updated_at,
        )


class OrgJoinResponse(BaseModel):
    outcome: JoinOutcome
    organization: OrgResponse


class OrgListItem(BaseModel):
    id: uuid.UUID
    name: str
    description: str
    join_code: str
    role: MemberRole  # the requesting user's role in this org
    member_count: int
    is_current: bool


class OrgListResponse(BaseModel):
    data: list[OrgListItem]
    current_organization: Optional[uuid.UUID] = None


class RepairReport(BaseModel):
    """Result of a reconcile pass. ``organization_id`` is None for the global sweep."""
    organization_id: Optional[uuid.UUID] = None
    users_missing_entry: list[uuid.UUID] = Field(default_factory=list)
    members_missing_row: list[uuid.UUID] = Field(default_factory=list)
    duplicate_members_removed: int = 0
    duplicate_entries_removed: int = 0
    orphaned_members_removed: list[uuid.UUID] = Field(default_factory=list)
    orphaned_user_entries: list[uuid.UUID] = Field(default_factory=list)
    current_organization_reset: list[uuid.UUID] = Field(default_factory=list)

    @computed_field
    @property
    def repaired(self) -> bool:
        return bool(
            self.users_missing_entry
            or self.members_missing_row
            or self.duplicate_members_removed
            or self.duplicate_entries_removed
            or self.orphaned_members_removed
            or self.orphaned_user_entries
            or self.current_organization_reset
        )
