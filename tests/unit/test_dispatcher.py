"""Tests for the notification dispatcher."""

import pytest

from postgate import ApprovalAction, Assignment, AssignmentStatus, TransitionEvent
from postgate.db import Notification, NotificationDB, NotificationPreference, NotificationTemplate
from postgate.notifications import DeliveryResult, NotificationDispatcher, NotificationRequest


class FakeEmail:
    def __init__(self, success=True):
        self.success = success
        self.sent = []

    async def send(self, to, subject, body):
        self.sent.append((to, subject, body))
        if self.success:
            return DeliveryResult(success=True)
        return DeliveryResult(success=False, error="mailbox full")


async def _db(tmp_path) -> NotificationDB:
    db = NotificationDB(f"sqlite+aiosqlite:///{tmp_path / 'notify.db'}")
    await db.init_db()
    return db


def _assignment() -> Assignment:
    return Assignment(
        id="a-1",
        content_id="post-1",
        owner_id="owner-1",
        workflow_id="wf-1",
        current_step_id="wf-1-step-2",
    )


def _event(recipients=("editor-1", "editor-2"), **overrides) -> TransitionEvent:
    fields = dict(
        assignment_id="a-1",
        content_id="post-1",
        workflow_id="wf-1",
        actor_id="legal-1",
        action=ApprovalAction.APPROVE,
        previous_status=AssignmentStatus.PENDING,
        status=AssignmentStatus.PENDING,
        notification_type="approval_requested",
        recipient_ids=list(recipients),
        payload={"step_name": "Edit", "workflow_name": "Blog"},
    )
    fields.update(overrides)
    return TransitionEvent(**fields)


async def _rows(db, recipient_id):
    return await db.list_for_recipient(recipient_id, limit=100)


@pytest.mark.asyncio
async def test_fan_out_per_recipient_and_channel(tmp_path):
    db = await _db(tmp_path)
    for user_id in ("editor-1", "editor-2"):
        await db.save_preferences(NotificationPreference(user_id=user_id, email=f"{user_id}@example.com"))
    email = FakeEmail()
    dispatcher = NotificationDispatcher(db, email=email, channels=["in_app", "email"])

    await dispatcher.queue_approval_notifications(_assignment(), _event())

    for user_id in ("editor-1", "editor-2"):
        rows = await _rows(db, user_id)
        assert sorted(r.channel for r in rows) == ["email", "in_app"]
        assert all(r.status == "sent" for r in rows)
        assert all(r.sent_at is not None for r in rows)
        assert all(r.content_id == "post-1" for r in rows)
    assert sorted(to for to, _, _ in email.sent) == ["editor-1@example.com", "editor-2@example.com"]
    await db.dispose()


@pytest.mark.asyncio
async def test_redelivered_event_is_not_duplicated(tmp_path):
    db = await _db(tmp_path)
    dispatcher = NotificationDispatcher(db)
    event = _event()

    await dispatcher.queue_approval_notifications(_assignment(), event)
    await dispatcher.queue_approval_notifications(_assignment(), event)

    assert len(await _rows(db, "editor-1")) == 1
    assert len(await _rows(db, "editor-2")) == 1
    await db.dispose()


@pytest.mark.asyncio
async def test_no_recipients_is_a_no_op(tmp_path):
    db = await _db(tmp_path)
    dispatcher = NotificationDispatcher(db)
    await dispatcher.queue_approval_notifications(_assignment(), _event(recipients=()))
    assert await db.unread_count("editor-1") == 0
    await db.dispose()


@pytest.mark.asyncio
async def test_email_uses_template_and_records_failures(tmp_path):
    db = await _db(tmp_path)
    await db.save_template(
        NotificationTemplate(
            event_type="approval",
            notification_type="approval_requested",
            channel="email",
            subject="Please review: {{workflow_name}}",
            body_template="Step {{step_name}} is waiting for you.",
        )
    )
    await db.save_preferences(NotificationPreference(user_id="editor-1", email="e1@example.com"))
    email = FakeEmail(success=False)
    dispatcher = NotificationDispatcher(db, email=email, channels=["email"])

    await dispatcher.queue_approval_notifications(_assignment(), _event())

    assert email.sent == [("e1@example.com", "Please review: Blog", "Step Edit is waiting for you.")]
    (failed,) = await _rows(db, "editor-1")
    assert failed.status == "failed"
    assert failed.error == "mailbox full"
    (missing,) = await _rows(db, "editor-2")
    assert missing.status == "failed"
    assert missing.error == "Recipient email not found"
    await db.dispose()


@pytest.mark.asyncio
async def test_payload_email_wins_over_preferences(tmp_path):
    db = await _db(tmp_path)
    await db.save_preferences(NotificationPreference(user_id="owner-1", email="old@example.com"))
    email = FakeEmail()
    dispatcher = NotificationDispatcher(db, email=email)

    await dispatcher.queue_notification(
        NotificationRequest(
            recipient_id="owner-1",
            channel="email",
            notification_type="post_approved",
            payload={"email": "new@example.com"},
        )
    )

    assert email.sent[0][0] == "new@example.com"
    await db.dispose()


@pytest.mark.asyncio
async def test_sms_without_adapter_fails(tmp_path):
    db = await _db(tmp_path)
    dispatcher = NotificationDispatcher(db, channels=["sms"])

    await dispatcher.queue_approval_notifications(_assignment(), _event(recipients=["editor-1"]))

    (row,) = await _rows(db, "editor-1")
    assert row.status == "failed"
    assert row.error == "SMS not configured"
    await db.dispose()


@pytest.mark.asyncio
async def test_list_and_mark_read(tmp_path):
    db = await _db(tmp_path)
    dispatcher = NotificationDispatcher(db)
    ids = []
    for n in range(3):
        ids.append(
            await dispatcher.queue_notification(
                NotificationRequest(
                    recipient_id="owner-1", channel="in_app", notification_type=f"type_{n}"
                )
            )
        )
    other = await dispatcher.queue_notification(
        NotificationRequest(recipient_id="owner-2", channel="in_app", notification_type="x")
    )

    page = await dispatcher.list_notifications("owner-1", limit=2)
    assert len(page.notifications) == 2
    assert page.has_more
    assert page.unread_count == 3

    assert await dispatcher.mark_read([ids[0], other], "owner-1") == 1
    assert await dispatcher.unread_count("owner-1") == 2
    assert await dispatcher.unread_count("owner-2") == 1

    unread = await dispatcher.list_notifications("owner-1", unread_only=True)
    assert {n.id for n in unread.notifications} == {ids[1], ids[2]}
    assert not unread.has_more

    assert await dispatcher.mark_all_read("owner-1") == 2
    assert await dispatcher.unread_count("owner-1") == 0
    await db.dispose()


@pytest.mark.asyncio
async def test_list_limit_is_capped(tmp_path):
    db = await _db(tmp_path)
    for n in range(3):
        await db.add_notification(
            Notification(recipient_id="owner-1", channel="in_app", notification_type=f"t{n}")
        )
    dispatcher = NotificationDispatcher(db)

    page = await dispatcher.list_notifications("owner-1", limit=500)

    assert len(page.notifications) == 3
    assert not page.has_more
    await db.dispose()


class FlakyEmail:
    """Raises on the first ``failures`` sends, then delivers."""

    def __init__(self, failures=1):
        self.failures = failures
        self.sent = []

    async def send(self, to, subject, body):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("smtp relay reset")
        self.sent.append((to, subject, body))
        return DeliveryResult(success=True)


@pytest.mark.asyncio
async def test_redelivery_retries_row_left_pending_by_a_crash(tmp_path):
    db = await _db(tmp_path)
    await db.save_preferences(NotificationPreference(user_id="editor-1", email="ed@example.com"))
    email = FlakyEmail()
    dispatcher = NotificationDispatcher(db, email=email, channels=["email"])
    event = _event(recipients=("editor-1",))

    with pytest.raises(ConnectionError):
        await dispatcher.queue_approval_notifications(_assignment(), event)
    (row,) = await _rows(db, "editor-1")
    assert row.status == "pending"

    await dispatcher.queue_approval_notifications(_assignment(), event)

    (row,) = await _rows(db, "editor-1")
    assert row.status == "sent"
    assert [to for to, _, _ in email.sent] == ["ed@example.com"]
    await db.dispose()


@pytest.mark.asyncio
async def test_redelivery_retries_failed_row_but_not_sent_row(tmp_path):
    db = await _db(tmp_path)
    await db.save_preferences(NotificationPreference(user_id="editor-1", email="ed@example.com"))
    email = FakeEmail(success=False)
    dispatcher = NotificationDispatcher(db, email=email, channels=["email"])
    request = NotificationRequest(
        recipient_id="editor-1",
        channel="email",
        notification_type="approval_requested",
        payload={"step_name": "Edit"},
        event_id="evt-1",
    )

    first = await dispatcher.queue_notification(request)
    assert (await db.get_notification(first)).status == "failed"

    email.success = True
    retried = await dispatcher.queue_notification(request)
    assert retried == first
    assert (await db.get_notification(first)).status == "sent"

    assert await dispatcher.queue_notification(request) is None
    assert len(email.sent) == 2
    assert len(await _rows(db, "editor-1")) == 1
    await db.dispose()
