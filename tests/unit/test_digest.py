from datetime import datetime, timedelta, timezone

import pytest

from postgate.db import Notification, NotificationDB, NotificationPreference
from postgate.notifications import DeliveryResult, run_digest_job
from postgate.notifications.digest import build_digest_body, format_payload, resolve_timezone


class RecordingEmail:
    def __init__(self, explode_for=()):
        self.sent = []
        self.explode_for = set(explode_for)

    async def send(self, to, subject, body):
        if to in self.explode_for:
            raise RuntimeError("smtp down")
        self.sent.append((to, subject, body))
        return DeliveryResult(success=True)


async def _db(tmp_path) -> NotificationDB:
    db = NotificationDB(f"sqlite+aiosqlite:///{tmp_path / 'notify.db'}")
    await db.init_db()
    return db


async def _add(db, recipient_id, notification_type, channel="in_app", created_at=None, payload=None):
    row = Notification(
        recipient_id=recipient_id,
        channel=channel,
        notification_type=notification_type,
        payload=payload,
    )
    if created_at is not None:
        row.created_at = created_at
    return await db.add_notification(row)


def test_format_payload_keeps_known_fields_in_order():
    payload = {"workflow_name": "Blog", "approver": "legal-1", "message": "", "other": "x"}
    assert format_payload(payload) == " - Approver: legal-1, Workflow: Blog"
    assert format_payload({}) == ""
    assert format_payload(None) == ""


def test_resolve_timezone_falls_back_to_utc():
    assert resolve_timezone("America/New_York").key == "America/New_York"
    assert resolve_timezone("Not/AZone").key == "UTC"
    assert resolve_timezone(None).key == "UTC"


def test_digest_body_uses_recipient_timezone():
    row = Notification(
        recipient_id="u1",
        channel="in_app",
        notification_type="post_approved",
        payload={"workflow_name": "Blog", "approver": "legal-1"},
    )
    row.created_at = datetime(2026, 1, 15, 14, 30, tzinfo=timezone.utc)

    body = build_digest_body([row], "daily", resolve_timezone("America/New_York"))

    assert body == (
        "Your Daily notification summary:\n\n"
        "- post approved - Approver: legal-1, Workflow: Blog (2026-01-15 09:30:00 EST)"
    )


def test_digest_body_treats_naive_timestamps_as_utc():
    row = Notification(recipient_id="u1", channel="in_app", notification_type="approval_requested")
    row.created_at = datetime(2026, 1, 15, 14, 30)

    body = build_digest_body([row], "weekly", resolve_timezone("UTC"))

    assert body.startswith("Your Weekly notification summary:")
    assert body.endswith("- approval requested (2026-01-15 14:30:00 UTC)")


@pytest.mark.asyncio
async def test_daily_digest_sends_recent_in_app_rows_once(tmp_path):
    db = await _db(tmp_path)
    now = datetime.now(timezone.utc)
    await db.save_preferences(
        NotificationPreference(user_id="u1", email="u1@example.com", daily_summary=True)
    )
    await db.save_preferences(NotificationPreference(user_id="u2", daily_summary=True))
    await db.save_preferences(
        NotificationPreference(user_id="u3", email="u3@example.com", weekly_digest=True)
    )
    await _add(db, "u1", "post_approved", payload={"workflow_name": "Blog"})
    await _add(db, "u1", "approval_requested")
    await _add(db, "u1", "post_rejected", created_at=now - timedelta(days=3))
    await _add(db, "u1", "post_approved", channel="email")
    await _add(db, "u2", "post_approved")
    await _add(db, "u3", "post_approved")
    email = RecordingEmail()

    first = await run_digest_job(db, email, "daily", now=now)

    assert first.users_processed == 1
    assert first.errors == ["u2: Recipient email not found"]
    ((to, subject, body),) = email.sent
    assert to == "u1@example.com"
    assert subject == "Daily notification summary"
    assert "- post approved - Workflow: Blog" in body
    assert "- approval requested (" in body
    assert "post rejected" not in body
    assert body.count("\n- ") == 2

    second = await run_digest_job(db, email, "daily", now=now)

    assert second.users_processed == 0
    assert len(email.sent) == 1
    await db.dispose()


@pytest.mark.asyncio
async def test_weekly_digest_covers_seven_days(tmp_path):
    db = await _db(tmp_path)
    now = datetime.now(timezone.utc)
    await db.save_preferences(
        NotificationPreference(user_id="u3", email="u3@example.com", weekly_digest=True)
    )
    await _add(db, "u3", "post_rejected", created_at=now - timedelta(days=3))
    await _add(db, "u3", "post_approved", created_at=now - timedelta(days=10))
    email = RecordingEmail()

    result = await run_digest_job(db, email, "weekly", now=now)

    assert result.users_processed == 1
    ((_, subject, body),) = email.sent
    assert subject == "Weekly notification digest"
    assert "post rejected" in body
    assert "post approved" not in body
    await db.dispose()


@pytest.mark.asyncio
async def test_one_user_failing_does_not_stop_others(tmp_path):
    db = await _db(tmp_path)
    for user_id in ("a", "b"):
        await db.save_preferences(
            NotificationPreference(user_id=user_id, email=f"{user_id}@example.com", daily_summary=True)
        )
        await _add(db, user_id, "post_approved")
    email = RecordingEmail(explode_for={"a@example.com"})

    result = await run_digest_job(db, email, "daily", concurrency=1)

    assert result.users_processed == 1
    assert result.errors == ["a: smtp down"]
    assert [to for to, _, _ in email.sent] == ["b@example.com"]

    # rows of the failed user stay eligible for the next run
    email.explode_for.clear()
    retry = await run_digest_job(db, email, "daily")
    assert retry.users_processed == 1
    assert [to for to, _, _ in email.sent] == ["b@example.com", "a@example.com"]
    await db.dispose()
