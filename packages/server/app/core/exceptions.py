"""
Membership error hierarchy.

Every failure the membership subsystem can surface is one of these. Each
class carries a stable ``code``, the HTTP status the API maps it to and a
user-facing default message. Keyword context (ids, stale side) is kept for
logging and is never rendered to clients.
"""

from __future__ import annotations

from typing import Any, Optional


class MembershipError(Exception):
    """Base class for all membership errors."""

    code: str = "MEMBERSHIP_ERROR"
    status_code: int = 500
    default_message: str = "Something went wrong with your membership request."
    transient: bool = False

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status_code,
            }
        }


# ---------------------------------------------------------------------------
# Lookup failures
# ---------------------------------------------------------------------------

class OrganizationNotFoundError(MembershipError):
    code = "ORGANIZATION_NOT_FOUND"
    status_code = 404
    default_message = "That join code is not valid."


class UserNotFoundError(MembershipError):
    code = "USER_NOT_FOUND"
    status_code = 404
    default_message = "User not found."


class NotAMemberError(MembershipError):
    code = "NOT_A_MEMBER"
    status_code = 403
    default_message = "You are not a member of this organization."


# ---------------------------------------------------------------------------
# Validation failures (raised before any write)
# ---------------------------------------------------------------------------

class InvalidAttributesError(MembershipError):
    code = "INVALID_ATTRIBUTES"
    status_code = 400
    default_message = "Organization details are invalid."


class DuplicateJoinCodeError(MembershipError):
    code = "DUPLICATE_JOIN_CODE"
    status_code = 400
    default_message = "This join code is already taken. Please choose a different one."


class DuplicateEmailError(MembershipError):
    code = "DUPLICATE_EMAIL"
    status_code = 409
    default_message = "An account with this email already exists."


# ---------------------------------------------------------------------------
# Write failures
# ---------------------------------------------------------------------------

class ConcurrentModificationError(MembershipError):
    """A conditional write found a newer document version."""

    code = "CONCURRENT_MODIFICATION"
    status_code = 409
    default_message = "This membership was changed by another request. Please try again."
    transient = True


class StoreUnavailableError(MembershipError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
    default_message = "The service is temporarily unavailable. Please try again."
    transient = True


class StoreTimeoutError(StoreUnavailableError):
    code = "STORE_TIMEOUT"


class PartialFailureError(MembershipError):
    """A rollback could not be completed; one side of an edge may be stale.

    ``stale_side`` is ``"organization"`` or ``"user"`` and ``document_id`` is
    the id of the document a reconcile pass should look at.
    """

    code = "PARTIAL_FAILURE"
    status_code = 500
    default_message = "Your request could not be completed. Please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        stale_side: str,
        document_id: Any,
        **context: Any,
    ):
        super().__init__(message, stale_side=stale_side, document_id=document_id, **context)
        self.stale_side = stale_side
        self.document_id = document_id
