"""User document."""

from typing import Optional
import uuid

from sqlmodel import Field, SQLModel

from .base import JSONDocument, TimestampMixin, UUIDMixin, VersionMixin


class User(UUIDMixin, TimestampMixin, VersionMixin, SQLModel, table=True):
    __tablename__ = "users"

    email: str = Field(unique=True, index=True, nullable=False)  # stored lowercase
    name: str = Field(nullable=False)
    password_hash: Optional[str] = Field(default=None)  # bcrypt
    # [{organization_id, role, joined_at}, ...]
    organizations: list = Field(default_factory=list, sa_type=JSONDocument, nullable=False)
    current_organization: Optional[uuid.UUID] = Field(default=None)
