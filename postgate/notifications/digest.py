"""Daily and weekly notification digests.

Delivery is at-least-once: when the email goes out but marking the rows as
digested fails, the next run sends them again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from ..db import Notification, NotificationDB
from .adapters import DeliveryResult, EmailAdapter

logger = logging.getLogger(__name__)

DigestKind = Literal["daily", "weekly"]

WINDOWS = {"daily": timedelta(days=1), "weekly": timedelta(days=7)}
SUBJECTS = {"daily": "Daily notification summary", "weekly": "Weekly notification digest"}

# payload keys shown to people, with their labels
DIGEST_FIELDS = {
    "approver": "Approver",
    "post_title": "Post",
    "step_name": "Step",
    "workflow_name": "Workflow",
    "email": "Email",
    "message": "Message",
}


class DigestResult(BaseModel):
    users_processed: int = 0
    errors: List[str] = Field(default_factory=list)


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}; using UTC for digest")
        return ZoneInfo("UTC")


def format_payload(payload: Optional[Dict[str, Any]]) -> str:
    parts = []
    for key, label in DIGEST_FIELDS.items():
        value = (payload or {}).get(key)
        if isinstance(value, bool) or isinstance(value, (int, float)):
            parts.append(f"{label}: {value}")
        elif isinstance(value, str) and value:
            parts.append(f"{label}: {value}")
    return f" - {', '.join(parts)}" if parts else ""


def build_digest_body(
    notifications: Sequence[Notification], kind: DigestKind, tz: ZoneInfo
) -> str:
    title = "Daily" if kind == "daily" else "Weekly"
    lines = [f"Your {title} notification summary:\n"]
    for row in notifications:
        created = row.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        stamp = created.astimezone(tz).strftime("%Y-%m-%d %H:%M:%S %Z")
        kind_label = row.notification_type.replace("_", " ")
        lines.append(f"- {kind_label}{format_payload(row.payload)} ({stamp})")
    return "\n".join(lines)


async def send_digest_to_user(
    db: NotificationDB,
    email: EmailAdapter,
    user_id: str,
    notifications: Sequence[Notification],
    kind: DigestKind,
) -> DeliveryResult:
    if not notifications:
        return DeliveryResult(success=True)
    prefs = await db.get_preferences(user_id)
    payload_email = (notifications[0].payload or {}).get("email")
    to = payload_email if isinstance(payload_email, str) and "@" in payload_email else None
    to = to or (prefs.email if prefs else None)
    if not to:
        return DeliveryResult(success=False, error="Recipient email not found")

    tz = resolve_timezone(prefs.timezone if prefs else None)
    body = build_digest_body(notifications, kind, tz)
    result = await email.send(to, SUBJECTS[kind], body)
    if result.success:
        await db.mark_digest_sent([row.id for row in notifications])
    return result


async def run_digest_job(
    db: NotificationDB,
    email: EmailAdapter,
    kind: DigestKind,
    *,
    now: Optional[datetime] = None,
    concurrency: int = 5,
    batch_size: int = 100,
) -> DigestResult:
    """Send the ``kind`` digest to every opted-in user.

    Users are processed with at most ``concurrency`` in flight; one user's
    failure is reported in ``errors`` and does not stop the others.
    """
    since = (now or datetime.now(timezone.utc)) - WINDOWS[kind]
    user_ids = await db.digest_eligible_user_ids(kind)
    semaphore = asyncio.Semaphore(concurrency)

    async def _process(user_id: str) -> tuple[int, DeliveryResult]:
        async with semaphore:
            rows = await db.notifications_for_digest(user_id, since, batch_size)
            return len(rows), await send_digest_to_user(db, email, user_id, rows, kind)

    outcomes = await asyncio.gather(
        *(_process(user_id) for user_id in user_ids), return_exceptions=True
    )

    result = DigestResult()
    for user_id, outcome in zip(user_ids, outcomes):
        if isinstance(outcome, BaseException):
            logger.error(f"{kind} digest for {user_id} failed: {outcome}")
            result.errors.append(f"{user_id}: {outcome}")
            continue
        count, delivery = outcome
        if delivery.success and count:
            result.users_processed += 1
        elif delivery.error:
            result.errors.append(f"{user_id}: {delivery.error}")
    logger.info(
        f"{kind} digest: {result.users_processed} sent, {len(result.errors)} error(s)"
    )
    return result
