"""Multi-channel notification dispatcher.

Transition events are fanned out into one ``notification`` row per recipient
and channel. In-app rows are visible as soon as they are stored; email and
SMS rows are delivered immediately and record the outcome on the row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Literal, Optional, Sequence
from uuid import UUID

from pydantic import BaseModel, Field

from ..contracts import Assignment, TransitionEvent
from ..db import Notification, NotificationDB
from .adapters import EmailAdapter, SmsAdapter, UnconfiguredSmsAdapter
from .templates import render_notification_content

logger = logging.getLogger(__name__)

Channel = Literal["in_app", "email", "sms"]

DEFAULT_LIMIT = 50
MAX_LIMIT = 100


class NotificationRequest(BaseModel):
    recipient_id: str
    channel: Channel
    notification_type: str
    event_type: str = "approval"
    payload: Optional[Dict[str, Any]] = None
    content_id: Optional[str] = None
    event_id: Optional[str] = None
    priority: Literal["low", "normal", "urgent"] = "normal"
    schedule_for: Optional[datetime] = None


class NotificationList(BaseModel):
    notifications: List[Notification] = Field(default_factory=list)
    unread_count: int = 0
    has_more: bool = False


class NotificationDispatcher:
    """Persist and deliver notifications; implements ``TransitionNotifier``."""

    def __init__(
        self,
        db: NotificationDB,
        email: Optional[EmailAdapter] = None,
        sms: Optional[SmsAdapter] = None,
        channels: Sequence[Channel] = ("in_app",),
    ) -> None:
        self.db = db
        self._email = email
        self._sms = sms or UnconfiguredSmsAdapter()
        self.channels = list(channels)

    async def queue_approval_notifications(
        self, assignment: Assignment, event: TransitionEvent
    ) -> None:
        if not event.recipient_ids:
            return
        payload = {
            **event.payload,
            "content_id": event.content_id,
            "status": event.status.value,
        }
        for recipient_id in event.recipient_ids:
            for channel in self.channels:
                await self.queue_notification(
                    NotificationRequest(
                        recipient_id=recipient_id,
                        channel=channel,
                        notification_type=event.notification_type,
                        payload=payload,
                        content_id=assignment.content_id,
                        event_id=event.event_id,
                    )
                )
        logger.info(
            f"Queued {event.notification_type} for {len(event.recipient_ids)} "
            f"recipient(s) on {','.join(self.channels)}"
        )

    async def queue_notifications(self, requests: Iterable[NotificationRequest]) -> None:
        for request in requests:
            await self.queue_notification(request)

    async def queue_notification(self, request: NotificationRequest) -> Optional[UUID]:
        """Store one notification and deliver it on its channel.

        A redelivered event reuses the row stored the first time and retries
        delivery unless that row was already sent.

        Returns the row id, or ``None`` when the same event was already
        sent to this recipient on this channel.
        """
        row = Notification(
            event_id=request.event_id,
            recipient_id=request.recipient_id,
            channel=request.channel,
            event_type=request.event_type,
            notification_type=request.notification_type,
            payload=request.payload,
            content_id=request.content_id,
            priority=request.priority,
            scheduled_at=request.schedule_for or datetime.now(timezone.utc),
        )
        stored = await self.db.add_notification(row)
        if stored is None:
            stored = await self.db.get_by_event(
                request.event_id, request.recipient_id, request.channel
            )
            if stored is None or stored.status == "sent":
                return None
            logger.info(f"Retrying {stored.status} {stored.channel} notification {stored.id}")

        if request.channel == "in_app":
            await self.db.mark_sent(stored.id)
        elif request.channel == "email":
            await self._deliver_email(stored)
        elif request.channel == "sms":
            await self._deliver_sms(stored)
        return stored.id

    async def _deliver_email(self, row: Notification) -> None:
        if self._email is None:
            await self.db.mark_failed(row.id, "Email not configured")
            return
        prefs = await self.db.get_preferences(row.recipient_id)
        to = _payload_email(row.payload) or (prefs.email if prefs else None)
        if not to:
            await self.db.mark_failed(row.id, "Recipient email not found")
            return
        subject, body = await render_notification_content(
            self.db,
            row.event_type,
            row.notification_type,
            "email",
            row.payload,
            prefs.locale if prefs else "en",
        )
        result = await self._email.send(to, subject, body)
        if result.success:
            await self.db.mark_sent(row.id)
        else:
            await self.db.mark_failed(row.id, result.error or "Email delivery failed")

    async def _deliver_sms(self, row: Notification) -> None:
        prefs = await self.db.get_preferences(row.recipient_id)
        phone = (row.payload or {}).get("phone") or (prefs.phone_number if prefs else None)
        _, body = await render_notification_content(
            self.db,
            row.event_type,
            row.notification_type,
            "sms",
            row.payload,
            prefs.locale if prefs else "en",
        )
        result = await self._sms.send(str(phone or "").strip(), body)
        if result.success:
            await self.db.mark_sent(row.id)
        else:
            await self.db.mark_failed(row.id, result.error or "SMS delivery failed")

    async def list_notifications(
        self,
        recipient_id: str,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
        event_type: Optional[str] = None,
        unread_only: bool = False,
        since: Optional[datetime] = None,
    ) -> NotificationList:
        limit = max(1, min(limit, MAX_LIMIT))
        rows = await self.db.list_for_recipient(
            recipient_id,
            limit=limit,
            offset=offset,
            event_type=event_type,
            unread_only=unread_only,
            since=since,
        )
        unread = await self.db.unread_count(recipient_id)
        return NotificationList(
            notifications=rows, unread_count=unread, has_more=len(rows) == limit
        )

    async def unread_count(self, recipient_id: str, event_type: Optional[str] = None) -> int:
        return await self.db.unread_count(recipient_id, event_type)

    async def mark_read(self, notification_ids: Iterable[UUID | str], recipient_id: str) -> int:
        return await self.db.mark_read(notification_ids, recipient_id)

    async def mark_all_read(self, recipient_id: str, event_type: Optional[str] = None) -> int:
        return await self.db.mark_all_read(recipient_id, event_type)


def _payload_email(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    value = (payload or {}).get("email")
    return value if isinstance(value, str) and "@" in value else None
