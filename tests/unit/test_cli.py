import asyncio

import pytest
from typer.testing import CliRunner

from conftest import build_directory, build_workflow
from postgate import ApprovalService
from postgate.cli import app
from postgate.persistence import SQLiteApprovalStore

runner = CliRunner()


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "approvals.db"
    notify_path = tmp_path / "notify.db"
    config_path = tmp_path / "postgate.yaml"
    config_path.write_text(
        f"notifications:\n  database_url: sqlite+aiosqlite:///{notify_path}\n"
    )
    monkeypatch.setenv("POSTGATE_CONFIG", str(config_path))
    monkeypatch.setenv("POSTGATE_DATABASE_URL", f"sqlite://{path}")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    return path


def _seed(path) -> None:
    async def _run():
        store = SQLiteApprovalStore(path)
        await store.workflows.save_workflow(build_workflow())
        service = ApprovalService(store, build_directory())
        await service.ensure_workflow_assignment("post-1", "owner-1")
        await service.advance_workflow_step("post-1", "editor-1", "approve", {"comment": "ok"})

    asyncio.run(_run())


def test_workflow_list(db_path):
    _seed(db_path)

    result = runner.invoke(app, ["workflow", "list", "owner-1"])
    assert result.exit_code == 0, result.stdout
    assert "wf-1\tWorkflow wf-1 (global)" in result.stdout
    assert "1. Step 1 [role:editor] min=1" in result.stdout
    assert "2. Step 2 [user:legal-1] min=1" in result.stdout

    empty = runner.invoke(app, ["workflow", "list", "nobody"])
    assert empty.exit_code == 0
    assert "No workflows found" in empty.stdout


def test_pending_and_dashboard(db_path):
    _seed(db_path)

    pending = runner.invoke(app, ["approvals", "pending", "legal-1"])
    assert pending.exit_code == 0, pending.stdout
    assert "post-1\twf-1-step-2" in pending.stdout

    # editor step already passed; nothing pending for editors
    editors = runner.invoke(app, ["approvals", "pending", "editor-2", "--role", "editor"])
    assert "No pending approvals" in editors.stdout

    dashboard = runner.invoke(app, ["approvals", "dashboard", "editor-2", "--role", "editor"])
    assert dashboard.exit_code == 0, dashboard.stdout
    assert "Nothing to review" in dashboard.stdout

    legal = runner.invoke(app, ["approvals", "dashboard", "legal-1"])
    assert "post-1\tWorkflow wf-1\tStep 2\tpending" in legal.stdout


def test_stats_and_history(db_path):
    _seed(db_path)

    stats = runner.invoke(app, ["approvals", "stats", "owner-1"])
    assert stats.exit_code == 0, stats.stdout
    assert "Total: 1" in stats.stdout
    assert "Pending: 1" in stats.stdout
    assert "wf-1-step-2: 1 pending" in stats.stdout

    history = runner.invoke(app, ["approvals", "history", "post-1"])
    assert history.exit_code == 0, history.stdout
    assert "editor-1\tapprove\tpending -> pending\tcomment=ok" in history.stdout


def test_history_of_unknown_content_fails(db_path):
    result = runner.invoke(app, ["approvals", "history", "missing"])
    assert result.exit_code != 0


def test_overdue_when_nothing_is_late(db_path):
    _seed(db_path)
    result = runner.invoke(app, ["approvals", "overdue"])
    assert result.exit_code == 0, result.stdout
    assert "No overdue approvals" in result.stdout


def test_digest_rejects_unknown_kind(db_path):
    result = runner.invoke(app, ["notifications", "digest", "monthly"])
    assert result.exit_code == 1
    assert "daily" in result.stdout


def test_digest_with_no_subscribers(db_path):
    result = runner.invoke(app, ["notifications", "digest", "daily"])
    assert result.exit_code == 0, result.stdout
    assert "Digests sent: 0" in result.stdout


def test_comments_and_revisions(db_path):
    async def _run():
        service = ApprovalService(SQLiteApprovalStore(db_path), build_directory())
        root = await service.create_approval_comment(
            "post-1", "legal-1", "Add a source", comment_type="revision_request"
        )
        await service.create_approval_comment("post-1", "owner-1", "Added", parent_comment_id=root.id)
        await service.resolve_approval_comment(root.id, "legal-1")
        await service.record_revision("post-1", "owner-1", {"content": "First   draft"})
        await service.record_revision("post-1", "owner-1", {}, reason="media swap")

    asyncio.run(_run())

    comments = runner.invoke(app, ["approvals", "comments", "post-1"])
    assert comments.exit_code == 0, comments.stdout
    lines = [line for line in comments.stdout.splitlines() if "\t" in line]
    assert lines[0].endswith("legal-1\trevision_request\tresolved\tAdd a source")
    assert lines[1].startswith("  ")
    assert lines[1].endswith("owner-1\tfeedback\topen\tAdded")

    revisions = runner.invoke(app, ["approvals", "revisions", "post-1"])
    assert revisions.exit_code == 0, revisions.stdout
    first, second = [line for line in revisions.stdout.splitlines() if "\t" in line]
    assert first.startswith("#2\t") and first.endswith("\tmedia swap")
    assert second.startswith("#1\t") and second.endswith("\tFirst draft")

    assert "No comments" in runner.invoke(app, ["approvals", "comments", "post-9"]).stdout
    assert "No revisions" in runner.invoke(app, ["approvals", "revisions", "post-9"]).stdout
