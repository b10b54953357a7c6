"""
Membership change events.

The membership service emits one event after each successful write. A
messaging collaborator consumes them; the default publisher pushes JSON
onto a Redis Pub/Sub channel.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from app.core.config import get_settings
from app.core.redis import get_redis

log = structlog.get_logger()

ORGANIZATION_CREATED = "organization.created"
MEMBER_JOINED = "member.joined"
MEMBER_LEFT = "member.left"
CURRENT_ORGANIZATION_CHANGED = "member.current_changed"
MEMBERSHIP_REPAIRED = "membership.repaired"


@dataclass(frozen=True)
class MembershipEvent:
    type: str
    organization_id: Optional[uuid.UUID]
    user_id: Optional[uuid.UUID] = None
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        return json.dumps(
            {
                "type": self.type,
                "organization_id": str(self.organization_id) if self.organization_id else None,
                "user_id": str(self.user_id) if self.user_id else None,
                "payload": self.payload,
                "occurred_at": self.occurred_at.isoformat(),
            },
            default=str,
        )


MembershipPublisher = Callable[[MembershipEvent], Awaitable[None]]


class RedisMembershipPublisher:
    """Publishes membership events to a Redis Pub/Sub channel."""

    def __init__(self, channel: Optional[str] = None):
        self.channel = channel or get_settings().membership_events_channel

    async def __call__(self, event: MembershipEvent) -> None:
        redis = await get_redis()
        receivers = await redis.publish(self.channel, event.to_json())
        log.debug("membership.event_published", type=event.type, receivers=receivers)


def default_publisher() -> Optional[MembershipPublisher]:
    """The configured publisher, or None when events are disabled."""
    if not get_settings().membership_events_enabled:
        return None
    return RedisMembershipPublisher()
