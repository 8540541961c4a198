"""Consume transition events from a transport and dispatch notifications."""

from __future__ import annotations

import logging
from typing import Optional

from ..constants import DEFAULT_TRANSITION_TOPIC
from ..contracts import Assignment, TransitionEvent
from ..transports import BaseTransport
from .dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)


class NotificationWorker:
    """Listens for transition events and hands them to the dispatcher."""

    def __init__(
        self,
        transport: BaseTransport,
        dispatcher: NotificationDispatcher,
        topic: str = DEFAULT_TRANSITION_TOPIC,
    ) -> None:
        self._transport = transport
        self._dispatcher = dispatcher
        self._topic = topic
        self.processed = 0
        self.failed = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Process events until ``lifespan`` seconds elapse (forever if ``None``)."""
        async for raw_message, event in self._transport.subscribe(
            self._topic, lifespan=lifespan
        ):
            try:
                await self.handle(event)
            except Exception:
                self.failed += 1
                logger.exception(
                    f"Dispatch of {event.notification_type} event={event.event_id} failed; requeueing"
                )
                await self._transport.nack(raw_message, requeue=True)
                continue
            self.processed += 1
            await self._transport.ack(raw_message)

    async def handle(self, event: TransitionEvent) -> None:
        # the dispatcher only reads identity fields from the assignment
        assignment = Assignment(
            id=event.assignment_id,
            content_id=event.content_id,
            owner_id="",
            workflow_id=event.workflow_id,
            current_step_id=event.current_step_id,
            status=event.status,
        )
        await self._dispatcher.queue_approval_notifications(assignment, event)
