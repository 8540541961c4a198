import pytest

from conftest import build_directory, build_workflow
from postgate import ApprovalService, AssignmentStatus, InMemoryContentGateway, TransportNotifier
from postgate.content import ContentRecord
from postgate.db import NotificationDB, NotificationPreference
from postgate.notifications import (
    DeliveryResult,
    NotificationDispatcher,
    NotificationWorker,
    run_digest_job,
)
from postgate.persistence import SQLiteApprovalStore
from postgate.transports.inmemory import InMemoryTransport


class RecordingEmail:
    def __init__(self):
        self.sent = []

    async def send(self, to, subject, body):
        self.sent.append((to, subject, body))
        return DeliveryResult(success=True)


@pytest.mark.asyncio
async def test_two_step_approval_notifies_each_party(tmp_path):
    store = SQLiteApprovalStore(tmp_path / "approvals.db")
    await store.workflows.save_workflow(build_workflow(name="Blog review"))
    transport = InMemoryTransport()
    content = InMemoryContentGateway()
    content.add(ContentRecord(id="post-1", owner_id="owner-1"))
    service = ApprovalService(
        store,
        build_directory(),
        notifier=TransportNotifier(transport),
        content=content,
    )

    db = NotificationDB(f"sqlite+aiosqlite:///{tmp_path / 'notify.db'}")
    await db.init_db()
    await db.save_preferences(
        NotificationPreference(user_id="owner-1", email="owner@example.com", daily_summary=True)
    )
    email = RecordingEmail()
    dispatcher = NotificationDispatcher(db, email=email, channels=["in_app", "email"])
    worker = NotificationWorker(transport, dispatcher)

    await service.ensure_workflow_assignment("post-1", "owner-1")
    await service.advance_workflow_step("post-1", "editor-1", "approve", {"comment": "reads well"})
    final = await service.advance_workflow_step("post-1", "legal-1", "approve")

    assert final.status is AssignmentStatus.APPROVED
    assert (await content.get_content("post-1")).approval_status is AssignmentStatus.APPROVED
    assert service.engine.emission_stats.emitted == 2

    await worker.start(lifespan=0.3)
    assert worker.processed == 2
    assert worker.failed == 0

    legal_rows = {r.channel: r for r in await db.list_for_recipient("legal-1", limit=10)}
    assert legal_rows["email"].error == "Recipient email not found"
    legal_row = legal_rows["in_app"]
    assert legal_row.notification_type == "approval_requested"
    assert legal_row.payload["step_name"] == "Step 2"
    assert legal_row.payload["workflow_name"] == "Blog review"
    assert legal_row.payload["action_details"] == {"comment": "reads well", "reason": None}
    assert legal_row.status == "sent"

    owner_rows = await db.list_for_recipient("owner-1", limit=10)
    assert sorted(r.channel for r in owner_rows) == ["email", "in_app"]
    assert {r.notification_type for r in owner_rows} == {"post_approved"}
    assert [to for to, _, _ in email.sent] == ["owner@example.com"]

    digest = await run_digest_job(db, email, "daily")
    assert digest.users_processed == 1
    to, subject, body = email.sent[-1]
    assert to == "owner@example.com"
    assert subject == "Daily notification summary"
    assert "- post approved - Approver: legal-1" in body
    await db.dispose()
