from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, col, select

from .models import Notification, NotificationPreference, NotificationTemplate

logger = logging.getLogger(__name__)

DIGEST_KEYS = {"daily": "daily_summary", "weekly": "weekly_digest"}


def _as_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class NotificationDB:
    """Async database helper for notification rows, templates and preferences."""

    def __init__(self, database_url: str) -> None:
        connect_args = (
            {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        )
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def add_notification(self, row: Notification) -> Optional[Notification]:
        """Insert ``row``; ``None`` if the same event already reached this recipient and channel."""
        async with self.session() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    f"Duplicate {row.channel} notification for "
                    f"event={row.event_id} recipient={row.recipient_id}"
                )
                return None
            await session.refresh(row)
        return row

    async def get_by_event(
        self, event_id: str, recipient_id: str, channel: str
    ) -> Optional[Notification]:
        async with self.session() as session:
            result = await session.execute(
                select(Notification)
                .where(Notification.event_id == event_id)
                .where(Notification.recipient_id == recipient_id)
                .where(Notification.channel == channel)
            )
            return result.scalars().first()

    async def mark_sent(self, notification_id: UUID) -> None:
        async with self.session() as session:
            row = await session.get(Notification, notification_id)
            if row is None:
                return
            row.status = "sent"
            row.sent_at = datetime.now(timezone.utc)
            row.error = None
            await session.commit()

    async def mark_failed(self, notification_id: UUID, error: str) -> None:
        async with self.session() as session:
            row = await session.get(Notification, notification_id)
            if row is None:
                return
            row.status = "failed"
            row.error = error
            await session.commit()

    async def get_notification(self, notification_id: UUID | str) -> Optional[Notification]:
        async with self.session() as session:
            return await session.get(Notification, _as_uuid(notification_id))

    async def list_for_recipient(
        self,
        recipient_id: str,
        *,
        limit: int,
        offset: int = 0,
        event_type: Optional[str] = None,
        unread_only: bool = False,
        since: Optional[datetime] = None,
    ) -> List[Notification]:
        query = select(Notification).where(Notification.recipient_id == recipient_id)
        if event_type:
            query = query.where(Notification.event_type == event_type)
        if unread_only:
            query = query.where(col(Notification.read_at).is_(None))
        if since is not None:
            query = query.where(Notification.created_at >= since)
        query = (
            query.order_by(col(Notification.created_at).desc()).offset(offset).limit(limit)
        )
        async with self.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def unread_count(
        self, recipient_id: str, event_type: Optional[str] = None
    ) -> int:
        query = (
            select(func.count())
            .select_from(Notification)
            .where(Notification.recipient_id == recipient_id)
            .where(col(Notification.read_at).is_(None))
        )
        if event_type:
            query = query.where(Notification.event_type == event_type)
        async with self.session() as session:
            result = await session.execute(query)
            return int(result.scalar_one())

    async def mark_read(
        self, notification_ids: Iterable[UUID | str], recipient_id: str
    ) -> int:
        ids = [_as_uuid(i) for i in notification_ids]
        if not ids:
            return 0
        stmt = (
            update(Notification)
            .where(col(Notification.id).in_(ids))
            .where(Notification.recipient_id == recipient_id)
            .values(read_at=datetime.now(timezone.utc))
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def mark_all_read(
        self, recipient_id: str, event_type: Optional[str] = None
    ) -> int:
        stmt = (
            update(Notification)
            .where(Notification.recipient_id == recipient_id)
            .where(col(Notification.read_at).is_(None))
        )
        if event_type:
            stmt = stmt.where(Notification.event_type == event_type)
        async with self.session() as session:
            result = await session.execute(
                stmt.values(read_at=datetime.now(timezone.utc))
            )
            await session.commit()
            return result.rowcount or 0

    async def save_template(self, template: NotificationTemplate) -> NotificationTemplate:
        async with self.session() as session:
            session.add(template)
            await session.commit()
            await session.refresh(template)
        return template

    async def get_template(
        self,
        event_type: str,
        notification_type: str,
        channel: str,
        locale: str = "en",
    ) -> Optional[NotificationTemplate]:
        """Look up a template, falling back to the ``en`` locale."""
        locales = [locale] if locale == "en" else [locale, "en"]
        async with self.session() as session:
            for candidate in locales:
                result = await session.execute(
                    select(NotificationTemplate)
                    .where(NotificationTemplate.event_type == event_type)
                    .where(NotificationTemplate.notification_type == notification_type)
                    .where(NotificationTemplate.channel == channel)
                    .where(NotificationTemplate.locale == candidate)
                )
                template = result.scalars().first()
                if template is not None:
                    return template
        return None

    async def save_preferences(self, prefs: NotificationPreference) -> None:
        async with self.session() as session:
            await session.merge(prefs)
            await session.commit()

    async def get_preferences(self, user_id: str) -> Optional[NotificationPreference]:
        async with self.session() as session:
            return await session.get(NotificationPreference, user_id)

    async def digest_eligible_user_ids(self, kind: str) -> List[str]:
        column = getattr(NotificationPreference, DIGEST_KEYS[kind])
        async with self.session() as session:
            result = await session.execute(
                select(NotificationPreference.user_id)
                .where(column == True)  # noqa: E712
                .order_by(NotificationPreference.user_id)
            )
            return list(result.scalars().all())

    async def notifications_for_digest(
        self, recipient_id: str, since: datetime, batch_size: int = 100
    ) -> List[Notification]:
        """In-app notifications since ``since`` not yet part of a digest, newest first."""
        accumulated: List[Notification] = []
        offset = 0
        while True:
            query = (
                select(Notification)
                .where(Notification.recipient_id == recipient_id)
                .where(Notification.channel == "in_app")
                .where(col(Notification.digest_sent_at).is_(None))
                .where(Notification.created_at >= since)
                .order_by(col(Notification.created_at).desc())
                .offset(offset)
                .limit(batch_size)
            )
            async with self.session() as session:
                result = await session.execute(query)
                batch = list(result.scalars().all())
            accumulated.extend(batch)
            if len(batch) < batch_size:
                break
            offset += batch_size
        return accumulated

    async def mark_digest_sent(self, notification_ids: Iterable[UUID | str]) -> None:
        ids = [_as_uuid(i) for i in notification_ids]
        if not ids:
            return
        async with self.session() as session:
            await session.execute(
                update(Notification)
                .where(col(Notification.id).in_(ids))
                .values(digest_sent_at=datetime.now(timezone.utc))
            )
            await session.commit()
