from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Notification(SQLModel, table=True):
    """One delivery of a notification to one recipient on one channel."""

    __table_args__ = (UniqueConstraint("event_id", "recipient_id", "channel"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    event_id: Optional[str] = Field(default=None, index=True)
    recipient_id: str = Field(index=True)
    channel: str
    event_type: str = Field(default="approval")
    notification_type: str
    payload: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    content_id: Optional[str] = None
    priority: str = Field(default="normal")
    status: str = Field(default="pending")
    scheduled_at: datetime = Field(default_factory=_now)
    sent_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    error: Optional[str] = None
    digest_sent_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_now, index=True)


class NotificationTemplate(SQLModel, table=True):
    """Subject and body templates per event, notification type, channel and locale."""

    __table_args__ = (
        UniqueConstraint("event_type", "notification_type", "channel", "locale"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    event_type: str
    notification_type: str
    channel: str
    locale: str = Field(default="en")
    subject: Optional[str] = None
    body_template: str


class NotificationPreference(SQLModel, table=True):
    """Per-user delivery addresses and digest opt-ins."""

    user_id: str = Field(primary_key=True)
    email: Optional[str] = None
    phone_number: Optional[str] = None
    timezone: str = Field(default="UTC")
    locale: str = Field(default="en")
    daily_summary: bool = False
    weekly_digest: bool = False
