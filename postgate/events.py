"""Post-commit hand-off of transition events to the notification side."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from pydantic import BaseModel

from .constants import DEFAULT_TRANSITION_TOPIC
from .contracts import Assignment, TransitionEvent
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class TransitionNotifier(Protocol):
    """Consumer of committed transitions.

    Delivery is at-least-once; implementations must tolerate duplicates.
    """

    async def queue_approval_notifications(
        self, assignment: Assignment, event: TransitionEvent
    ) -> None:
        """Queue notifications for a committed transition."""


class EmissionStats(BaseModel):
    """Counters of post-commit hand-offs, exposed for monitoring."""

    emitted: int = 0
    failed: int = 0
    last_error: Optional[str] = None


class TransportNotifier:
    """Publish transition events on a transport for a notification worker."""

    def __init__(
        self, transport: BaseTransport, topic: str = DEFAULT_TRANSITION_TOPIC
    ) -> None:
        self._transport = transport
        self.topic = topic

    async def queue_approval_notifications(
        self, assignment: Assignment, event: TransitionEvent
    ) -> None:
        await self._transport.publish(self.topic, event)
        logger.debug(
            f"Published {event.notification_type} for assignment={assignment.id} on {self.topic}"
        )


class NullNotifier:
    """Notifier that drops every event. Used when notifications are disabled."""

    async def queue_approval_notifications(
        self, assignment: Assignment, event: TransitionEvent
    ) -> None:
        return None
