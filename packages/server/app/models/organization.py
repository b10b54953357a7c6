"""Organization document."""

import uuid

from sqlmodel import Field, SQLModel

from .base import JSONDocument, TimestampMixin, UUIDMixin, VersionMixin


class Organization(UUIDMixin, TimestampMixin, VersionMixin, SQLModel, table=True):
    __tablename__ = "organizations"

    name: str = Field(nullable=False, index=True)
    description: str = Field(default="", nullable=False)
    join_code: str = Field(unique=True, nullable=False, index=True)  # stored uppercase
    created_by: uuid.UUID = Field(nullable=False)
    # [{user_id, role, joined_at, is_active}, ...]
    members: list = Field(default_factory=list, sa_type=JSONDocument, nullable=False)
