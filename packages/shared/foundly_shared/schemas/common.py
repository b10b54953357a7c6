from enum import Enum
from typing import Optional

from pydantic import BaseModel


class MemberRole(str, Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    MEMBER = "member"


class JoinOutcome(str, Enum):
    JOINED = "joined"
    ALREADY_MEMBER = "alreadyMember"


class StaleSide(str, Enum):
    ORGANIZATION = "organization"
    USER = "user"


# Join codes are stored uppercase; the boundary accepts any case.
JOIN_CODE_PATTERN = r"^[A-Z0-9]{6,10}$"
GENERATED_JOIN_CODE_LENGTH = 6


class ErrorDetail(BaseModel):
    code: str
    message: str
    status: int


class ErrorResponse(BaseModel):
    error: ErrorDetail


class MessageResponse(BaseModel):
    message: str
    data: Optional[object] = None
