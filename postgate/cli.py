"""Command line interface for inspecting approvals and running notification jobs."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

import typer

from postgate import (
    Actor,
    ApprovalQueryService,
    CommentService,
    RevisionService,
    StaticActorDirectory,
    get_store,
    get_transport,
)
from postgate.config import load_config
from postgate.db import NotificationDB
from postgate.notifications import (
    NotificationDispatcher,
    NotificationWorker,
    ResendEmailAdapter,
    run_digest_job,
)

app = typer.Typer(help="CLI for Postgate approval workflows")

workflow_app = typer.Typer(help="Commands for inspecting workflows")
approvals_app = typer.Typer(help="Commands for inspecting approval assignments")
notifications_app = typer.Typer(help="Commands for notification delivery")

app.add_typer(workflow_app, name="workflow")
app.add_typer(approvals_app, name="approvals")
app.add_typer(notifications_app, name="notifications")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", help="Logging level"),
) -> None:
    """Postgate CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _query_service(actor_id: str, roles: List[str], teams: List[str]) -> ApprovalQueryService:
    directory = StaticActorDirectory(
        [Actor(id=actor_id, roles=set(roles), teams=set(teams))]
    )
    return ApprovalQueryService(get_store(), directory)


def _email_adapter() -> ResendEmailAdapter:
    conf = load_config().notifications
    return ResendEmailAdapter(conf.resend_api_key, conf.resend_from)


@workflow_app.command("list")
def workflow_list(owner_id: str) -> None:
    """
    List the active workflows of an owner with their ordered steps.

    Example:
        postgate workflow list owner-1
        # Output: wf-123    Editorial review (global)
        #           1. Editor [role:editor] min=1
        #           2. Legal [user:u-7] min=1 sla=24h
    """
    store = get_store()
    workflows = asyncio.run(store.workflows.list_active_workflows(owner_id))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name} ({wf.scope.value})")
        for step in wf.steps:
            sla = f" sla={step.sla_hours}h" if step.sla_hours else ""
            typer.echo(
                f"  {step.step_order}. {step.step_name} "
                f"[{step.approver_type.value}:{step.approver_reference}] "
                f"min={step.min_approvals}{sla}"
            )


@approvals_app.command("pending")
def approvals_pending(
    actor_id: str,
    role: List[str] = typer.Option([], help="Role held by the actor (repeatable)"),
    team: List[str] = typer.Option([], help="Team the actor belongs to (repeatable)"),
) -> None:
    """List pending assignments the actor may act on."""
    service = _query_service(actor_id, role, team)
    pending = asyncio.run(service.get_pending_approvals(actor_id))
    if not pending:
        typer.echo("No pending approvals")
        return
    for assignment in pending:
        due = f"\tdue {assignment.next_due_at:%Y-%m-%d %H:%M}" if assignment.next_due_at else ""
        typer.echo(f"{assignment.content_id}\t{assignment.current_step_id}{due}")


@approvals_app.command("dashboard")
def approvals_dashboard(
    actor_id: str,
    role: List[str] = typer.Option([], help="Role held by the actor (repeatable)"),
    team: List[str] = typer.Option([], help="Team the actor belongs to (repeatable)"),
) -> None:
    """Show dashboard rows for the steps the actor is an approver of."""
    service = _query_service(actor_id, role, team)
    rows = asyncio.run(service.get_approval_dashboard(actor_id))
    if not rows:
        typer.echo("Nothing to review")
        return
    for row in rows:
        typer.echo(
            f"{row.content_id}\t{row.workflow_name}\t{row.step_name}\t{row.status.value}"
        )


@approvals_app.command("stats")
def approvals_stats(owner_id: str) -> None:
    """Show assignment counts for an owner."""
    service = _query_service(owner_id, [], [])
    stats = asyncio.run(service.get_approval_stats(owner_id))
    typer.echo(f"Total: {stats.total}")
    typer.echo(f"Pending: {stats.pending}")
    typer.echo(f"Approved: {stats.approved}")
    typer.echo(f"Rejected: {stats.rejected}")
    typer.echo(f"Changes requested: {stats.changes_requested}")
    if stats.avg_approval_hours is not None:
        typer.echo(f"Average approval time: {stats.avg_approval_hours}h")
    for step_id, count in stats.pending_by_step.items():
        typer.echo(f"  {step_id}: {count} pending")


@approvals_app.command("overdue")
def approvals_overdue() -> None:
    """List pending assignments past their step deadline."""
    service = _query_service("", [], [])
    overdue = asyncio.run(service.get_overdue_assignments())
    if not overdue:
        typer.echo("No overdue approvals")
        return
    for assignment in overdue:
        typer.echo(
            f"{assignment.content_id}\t{assignment.current_step_id}\t"
            f"due {assignment.next_due_at:%Y-%m-%d %H:%M}"
        )


@approvals_app.command("history")
def approvals_history(content_id: str) -> None:
    """Show the decision history of a content item."""
    service = _query_service("", [], [])
    entries = asyncio.run(service.get_assignment_history(content_id))
    if not entries:
        typer.echo("No decisions recorded")
        return
    for entry in entries:
        details = ""
        if entry.action_details:
            details = "\t" + ", ".join(
                f"{key}={value}" for key, value in entry.action_details.items() if value is not None
            )
        typer.echo(
            f"{entry.created_at:%Y-%m-%d %H:%M}\t{entry.actor_id}\t{entry.action.value}\t"
            f"{entry.previous_status.value} -> {entry.new_status.value}{details}"
        )


@approvals_app.command("comments")
def approvals_comments(content_id: str) -> None:
    """Show review comments of a content item, replies indented under their thread."""
    comments = asyncio.run(CommentService(get_store()).get_approval_comments(content_id))
    if not comments:
        typer.echo("No comments")
        return
    for comment in comments:
        indent = "  " if comment.parent_comment_id else ""
        state = "resolved" if comment.is_resolved else "open"
        typer.echo(
            f"{indent}{comment.created_at:%Y-%m-%d %H:%M}\t{comment.user_id}\t"
            f"{comment.comment_type.value}\t{state}\t{comment.comment}"
        )


@approvals_app.command("revisions")
def approvals_revisions(content_id: str) -> None:
    """List revisions of a content item, newest first."""
    revisions = asyncio.run(RevisionService(get_store()).list_revisions(content_id))
    if not revisions:
        typer.echo("No revisions")
        return
    for revision in revisions:
        typer.echo(
            f"#{revision.revision_number}\t{revision.id}\t{revision.author_id}\t"
            f"{revision.created_at:%Y-%m-%d %H:%M}\t{revision.summary}"
        )


@notifications_app.command("worker")
def notifications_worker(
    lifespan: Optional[float] = typer.Option(
        None, help="Worker timeout in seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run a worker that turns transition events into notifications.

    Example:
        postgate notifications worker --lifespan 300
    """
    config = load_config()
    transport = get_transport(config=config)
    db = NotificationDB(config.notifications.database_url)
    dispatcher = NotificationDispatcher(
        db, email=_email_adapter(), channels=config.notifications.channels
    )
    worker = NotificationWorker(transport, dispatcher, topic=config.transport.topic)

    async def _run() -> None:
        await db.init_db()
        try:
            async with transport:
                await worker.start(lifespan=lifespan)
        finally:
            await db.dispose()

    typer.echo(f"Starting notification worker on {config.transport.topic}")
    asyncio.run(_run())


@notifications_app.command("digest")
def notifications_digest(kind: str) -> None:
    """Send the daily or weekly digest to every opted-in user."""
    if kind not in ("daily", "weekly"):
        typer.secho("Digest kind must be 'daily' or 'weekly'", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    conf = load_config().notifications
    db = NotificationDB(conf.database_url)

    async def _run():
        await db.init_db()
        try:
            return await run_digest_job(
                db,
                _email_adapter(),
                kind,
                concurrency=conf.digest_concurrency,
                batch_size=conf.digest_batch_size,
            )
        finally:
            await db.dispose()

    result = asyncio.run(_run())
    typer.echo(f"Digests sent: {result.users_processed}")
    for error in result.errors:
        typer.secho(error, fg=typer.colors.RED)
    if result.errors:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
