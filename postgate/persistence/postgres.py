"""PostgreSQL implementation of the approval store."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional, Sequence

import asyncpg

from ..actors import Actor
from ..constants import ApproverType, AssignmentStatus
from ..contracts import (
    ApprovalComment,
    ApprovalHistoryEntry,
    Assignment,
    DashboardRow,
    Revision,
    TransitionRecord,
    Workflow,
    WorkflowStep,
)
from ..exceptions import ConcurrentModification

SCHEMA = """
CREATE TABLE IF NOT EXISTS workflows (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    scope TEXT NOT NULL DEFAULT 'global',
    scope_filters JSONB,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_by TEXT,
    created_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS workflow_steps (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
    step_order INTEGER NOT NULL,
    step_name TEXT NOT NULL,
    approver_type TEXT NOT NULL CHECK (approver_type IN ('user', 'role', 'team')),
    approver_reference TEXT NOT NULL,
    min_approvals INTEGER NOT NULL DEFAULT 1 CHECK (min_approvals >= 1),
    auto_escalate_after_hours INTEGER,
    is_optional BOOLEAN NOT NULL DEFAULT FALSE,
    sla_hours INTEGER,
    UNIQUE (workflow_id, step_order)
);
CREATE TABLE IF NOT EXISTS post_approval_assignments (
    id TEXT PRIMARY KEY,
    content_id TEXT NOT NULL UNIQUE,
    owner_id TEXT NOT NULL,
    workflow_id TEXT NOT NULL REFERENCES workflows(id),
    current_step_id TEXT REFERENCES workflow_steps(id),
    status TEXT NOT NULL CHECK (
        status IN ('pending', 'approved', 'rejected', 'changes_requested')
    ),
    step_history JSONB NOT NULL DEFAULT '[]'::jsonb,
    cycle INTEGER NOT NULL DEFAULT 1,
    version INTEGER NOT NULL DEFAULT 0,
    next_due_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS approval_history (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    assignment_id TEXT NOT NULL REFERENCES post_approval_assignments(id),
    step_id TEXT REFERENCES workflow_steps(id),
    actor_id TEXT NOT NULL,
    action TEXT NOT NULL,
    action_details JSONB,
    previous_status TEXT NOT NULL,
    new_status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS approval_comments (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    content_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    comment TEXT NOT NULL,
    comment_type TEXT NOT NULL DEFAULT 'feedback' CHECK (
        comment_type IN ('feedback', 'approval', 'rejection', 'revision_request')
    ),
    parent_comment_id TEXT REFERENCES approval_comments(id) ON DELETE CASCADE,
    thread_id TEXT,
    mentions TEXT[],
    workflow_step_id TEXT REFERENCES workflow_steps(id) ON DELETE SET NULL,
    is_resolved BOOLEAN NOT NULL DEFAULT FALSE,
    resolved_at TIMESTAMPTZ,
    resolved_by TEXT,
    resolved_comment TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS post_revisions (
    id TEXT PRIMARY KEY,
    content_id TEXT NOT NULL,
    revision_number INTEGER NOT NULL,
    author_id TEXT NOT NULL,
    snapshot JSONB NOT NULL,
    diff JSONB,
    created_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    UNIQUE (content_id, revision_number)
);
CREATE INDEX IF NOT EXISTS idx_assignments_step ON post_approval_assignments(current_step_id);
CREATE INDEX IF NOT EXISTS idx_assignments_owner ON post_approval_assignments(owner_id);
CREATE INDEX IF NOT EXISTS idx_history_assignment ON approval_history(assignment_id);
CREATE INDEX IF NOT EXISTS idx_comments_content ON approval_comments(content_id);
CREATE INDEX IF NOT EXISTS idx_comments_thread ON approval_comments(thread_id);
"""

ASSIGNMENT_COLUMNS = (
    "id, content_id, owner_id, workflow_id, current_step_id, status, step_history, "
    "cycle, version, next_due_at, created_at, updated_at"
)


def _json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _row_to_assignment(row: asyncpg.Record) -> Assignment:
    return Assignment(
        id=row["id"],
        content_id=row["content_id"],
        owner_id=row["owner_id"],
        workflow_id=row["workflow_id"],
        current_step_id=row["current_step_id"],
        status=AssignmentStatus(row["status"]),
        step_history=[TransitionRecord.model_validate(r) for r in _json(row["step_history"]) or []],
        cycle=row["cycle"],
        version=row["version"],
        next_due_at=row["next_due_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _history_json(assignment: Assignment) -> str:
    return json.dumps([r.model_dump(mode="json") for r in assignment.step_history])


class PostgresDatabase:
    """Opens a connection per call and lazily creates the schema."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await conn.execute(SCHEMA)
            self._initialized = True
        return conn

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        conn = await self._connect()
        try:
            yield conn
        finally:
            await conn.close()


async def _update_assignment(
    conn: asyncpg.Connection, assignment: Assignment, expected_version: int
) -> None:
    status = await conn.execute(
        """
        UPDATE post_approval_assignments
        SET workflow_id = $1, current_step_id = $2, status = $3, step_history = $4::jsonb,
            cycle = $5, next_due_at = $6, updated_at = $7, version = version + 1
        WHERE id = $8 AND version = $9
        """,
        assignment.workflow_id,
        assignment.current_step_id,
        assignment.status.value,
        _history_json(assignment),
        assignment.cycle,
        assignment.next_due_at,
        assignment.updated_at,
        assignment.id,
        expected_version,
    )
    # asyncpg returns the command tag, e.g. "UPDATE 1"
    if status.split()[-1] == "0":
        raise ConcurrentModification(assignment.id, expected_version)


class PostgresWorkflowRepository:
    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def save_workflow(self, workflow: Workflow) -> None:
        async with self._db.connection() as conn, conn.transaction():
            await conn.execute(
                """
                INSERT INTO workflows
                    (id, owner_id, name, description, scope, scope_filters, is_active, created_by, created_at)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9)
                ON CONFLICT (id) DO UPDATE SET
                    owner_id = EXCLUDED.owner_id, name = EXCLUDED.name,
                    description = EXCLUDED.description, scope = EXCLUDED.scope,
                    scope_filters = EXCLUDED.scope_filters, is_active = EXCLUDED.is_active
                """,
                workflow.id,
                workflow.owner_id,
                workflow.name,
                workflow.description,
                workflow.scope.value,
                json.dumps(workflow.scope_filters) if workflow.scope_filters else None,
                workflow.is_active,
                workflow.created_by,
                workflow.created_at,
            )
            await conn.execute(
                "DELETE FROM workflow_steps WHERE workflow_id = $1 AND NOT (id = ANY($2::text[]))",
                workflow.id,
                [s.id for s in workflow.steps],
            )
            await conn.executemany(
                """
                INSERT INTO workflow_steps
                    (id, workflow_id, step_order, step_name, approver_type, approver_reference,
                     min_approvals, auto_escalate_after_hours, is_optional, sla_hours)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (id) DO UPDATE SET
                    step_order = EXCLUDED.step_order, step_name = EXCLUDED.step_name,
                    approver_type = EXCLUDED.approver_type,
                    approver_reference = EXCLUDED.approver_reference,
                    min_approvals = EXCLUDED.min_approvals,
                    auto_escalate_after_hours = EXCLUDED.auto_escalate_after_hours,
                    is_optional = EXCLUDED.is_optional, sla_hours = EXCLUDED.sla_hours
                """,
                [
                    (
                        s.id,
                        s.workflow_id,
                        s.step_order,
                        s.step_name,
                        s.approver_type.value,
                        s.approver_reference,
                        s.min_approvals,
                        s.auto_escalate_after_hours,
                        s.is_optional,
                        s.sla_hours,
                    )
                    for s in workflow.steps
                ],
            )

    async def _load(
        self, conn: asyncpg.Connection, rows: list[asyncpg.Record]
    ) -> list[Workflow]:
        workflows: list[Workflow] = []
        for row in rows:
            steps = await conn.fetch(
                "SELECT * FROM workflow_steps WHERE workflow_id = $1 ORDER BY step_order",
                row["id"],
            )
            workflows.append(
                Workflow(
                    id=row["id"],
                    owner_id=row["owner_id"],
                    name=row["name"],
                    description=row["description"],
                    scope=row["scope"],
                    scope_filters=_json(row["scope_filters"]),
                    is_active=row["is_active"],
                    created_by=row["created_by"],
                    created_at=row["created_at"],
                    steps=[WorkflowStep(**dict(s)) for s in steps],
                )
            )
        return workflows

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        async with self._db.connection() as conn, conn.transaction(
            isolation="repeatable_read", readonly=True
        ):
            row = await conn.fetchrow("SELECT * FROM workflows WHERE id = $1", workflow_id)
            if not row:
                return None
            return (await self._load(conn, [row]))[0]

    async def list_active_workflows(self, owner_id: str) -> list[Workflow]:
        async with self._db.connection() as conn, conn.transaction(
            isolation="repeatable_read", readonly=True
        ):
            rows = await conn.fetch(
                "SELECT * FROM workflows WHERE owner_id = $1 AND is_active ORDER BY created_at",
                owner_id,
            )
            return await self._load(conn, rows)

    async def find_step_ids_for_actor(self, actor: Actor) -> list[str]:
        async with self._db.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT s.id FROM workflow_steps s
                JOIN workflows w ON w.id = s.workflow_id
                WHERE w.is_active AND (
                    (s.approver_type = $1 AND s.approver_reference = $2)
                    OR (s.approver_type = $3 AND s.approver_reference = ANY($4::text[]))
                    OR (s.approver_type = $5 AND s.approver_reference = ANY($6::text[]))
                )
                ORDER BY w.created_at, s.step_order
                """,
                ApproverType.USER.value,
                actor.id,
                ApproverType.ROLE.value,
                sorted(actor.roles),
                ApproverType.TEAM.value,
                sorted(actor.teams),
            )
        return [r["id"] for r in rows]


class PostgresAssignmentRepository:
    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def get_by_content(self, content_id: str) -> Assignment | None:
        async with self._db.connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {ASSIGNMENT_COLUMNS} FROM post_approval_assignments WHERE content_id = $1",
                content_id,
            )
        return _row_to_assignment(row) if row else None

    async def insert_if_absent(self, assignment: Assignment) -> Assignment:
        async with self._db.connection() as conn, conn.transaction():
            await conn.execute(
                f"""
                INSERT INTO post_approval_assignments ({ASSIGNMENT_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12)
                ON CONFLICT (content_id) DO NOTHING
                """,
                assignment.id,
                assignment.content_id,
                assignment.owner_id,
                assignment.workflow_id,
                assignment.current_step_id,
                assignment.status.value,
                _history_json(assignment),
                assignment.cycle,
                assignment.version,
                assignment.next_due_at,
                assignment.created_at,
                assignment.updated_at,
            )
            row = await conn.fetchrow(
                f"SELECT {ASSIGNMENT_COLUMNS} FROM post_approval_assignments WHERE content_id = $1",
                assignment.content_id,
            )
        return _row_to_assignment(row)

    async def compare_and_set(
        self, assignment: Assignment, expected_version: int
    ) -> Assignment:
        async with self._db.connection() as conn, conn.transaction():
            await _update_assignment(conn, assignment, expected_version)
        return assignment.model_copy(update={"version": expected_version + 1})

    async def list_by_steps(
        self,
        step_ids: Sequence[str],
        statuses: Optional[Iterable[AssignmentStatus]] = None,
    ) -> list[Assignment]:
        if not step_ids:
            return []
        wanted = [s.value for s in statuses] if statuses is not None else None
        async with self._db.connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {ASSIGNMENT_COLUMNS} FROM post_approval_assignments
                WHERE current_step_id = ANY($1::text[])
                  AND ($2::text[] IS NULL OR status = ANY($2::text[]))
                ORDER BY created_at
                """,
                list(step_ids),
                wanted,
            )
        return [_row_to_assignment(r) for r in rows]

    async def query_dashboard(self, step_ids: Sequence[str]) -> list[DashboardRow]:
        if not step_ids:
            return []
        async with self._db.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT a.id AS assignment_id, a.content_id, a.owner_id, a.workflow_id,
                       w.name AS workflow_name, a.current_step_id, s.step_name, s.step_order,
                       a.status, a.next_due_at, a.updated_at
                FROM post_approval_assignments a
                LEFT JOIN workflows w ON w.id = a.workflow_id
                LEFT JOIN workflow_steps s ON s.id = a.current_step_id
                WHERE a.current_step_id = ANY($1::text[])
                ORDER BY a.created_at
                """,
                list(step_ids),
            )
        return [DashboardRow(**dict(r)) for r in rows]

    async def list_for_owner(self, owner_id: str) -> list[Assignment]:
        async with self._db.connection() as conn:
            rows = await conn.fetch(
                f"SELECT {ASSIGNMENT_COLUMNS} FROM post_approval_assignments "
                "WHERE owner_id = $1 ORDER BY created_at",
                owner_id,
            )
        return [_row_to_assignment(r) for r in rows]

    async def list_overdue(self, now: datetime) -> list[Assignment]:
        async with self._db.connection() as conn:
            rows = await conn.fetch(
                f"SELECT {ASSIGNMENT_COLUMNS} FROM post_approval_assignments "
                "WHERE status = 'pending' AND next_due_at < $1 ORDER BY next_due_at",
                now,
            )
        return [_row_to_assignment(r) for r in rows]


class PostgresHistoryRepository:
    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def list_for_assignment(
        self, assignment_id: str
    ) -> list[ApprovalHistoryEntry]:
        async with self._db.connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM approval_history WHERE assignment_id = $1 ORDER BY seq",
                assignment_id,
            )
        return [
            ApprovalHistoryEntry(
                id=r["id"],
                assignment_id=r["assignment_id"],
                step_id=r["step_id"],
                actor_id=r["actor_id"],
                action=r["action"],
                action_details=_json(r["action_details"]),
                previous_status=r["previous_status"],
                new_status=r["new_status"],
                created_at=r["created_at"],
            )
            for r in rows
        ]


def _row_to_comment(row: asyncpg.Record) -> ApprovalComment:
    return ApprovalComment(
        id=row["id"],
        content_id=row["content_id"],
        user_id=row["user_id"],
        comment=row["comment"],
        comment_type=row["comment_type"],
        parent_comment_id=row["parent_comment_id"],
        thread_id=row["thread_id"],
        mentions=list(row["mentions"]) if row["mentions"] else None,
        workflow_step_id=row["workflow_step_id"],
        is_resolved=row["is_resolved"],
        resolved_at=row["resolved_at"],
        resolved_by=row["resolved_by"],
        resolved_comment=row["resolved_comment"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresCommentRepository:
    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def add_comment(self, comment: ApprovalComment) -> ApprovalComment:
        async with self._db.connection() as conn:
            await conn.execute(
                """
                INSERT INTO approval_comments
                    (id, content_id, user_id, comment, comment_type, parent_comment_id,
                     thread_id, mentions, workflow_step_id, is_resolved, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                """,
                comment.id,
                comment.content_id,
                comment.user_id,
                comment.comment,
                comment.comment_type.value,
                comment.parent_comment_id,
                comment.thread_id,
                comment.mentions or None,
                comment.workflow_step_id,
                comment.is_resolved,
                comment.created_at,
                comment.updated_at,
            )
        return comment

    async def get_comment(self, comment_id: str) -> ApprovalComment | None:
        async with self._db.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM approval_comments WHERE id = $1", comment_id)
        return _row_to_comment(row) if row else None

    async def list_for_content(self, content_id: str) -> list[ApprovalComment]:
        async with self._db.connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM approval_comments WHERE content_id = $1 ORDER BY created_at, seq",
                content_id,
            )
        return [_row_to_comment(r) for r in rows]

    async def resolve_comment(
        self,
        comment_id: str,
        resolver_id: str,
        resolution: Optional[str],
        at: datetime,
    ) -> ApprovalComment | None:
        async with self._db.connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE approval_comments
                SET is_resolved = TRUE, resolved_at = $2, resolved_by = $3,
                    resolved_comment = $4, updated_at = $2
                WHERE id = $1
                RETURNING *
                """,
                comment_id,
                at,
                resolver_id,
                resolution,
            )
        return _row_to_comment(row) if row else None


def _row_to_revision(row: asyncpg.Record) -> Revision:
    return Revision(
        id=row["id"],
        content_id=row["content_id"],
        revision_number=row["revision_number"],
        author_id=row["author_id"],
        snapshot=_json(row["snapshot"]),
        diff=_json(row["diff"]),
        created_reason=row["created_reason"],
        created_at=row["created_at"],
    )


class PostgresRevisionRepository:
    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def append_revision(self, revision: Revision) -> Revision:
        data = revision.model_dump(mode="json", include={"snapshot", "diff"})
        async with self._db.connection() as conn, conn.transaction():
            # serializes appends per content item so numbers stay unique
            await conn.execute(
                "SELECT pg_advisory_xact_lock(hashtext($1))", revision.content_id
            )
            row = await conn.fetchrow(
                """
                INSERT INTO post_revisions
                    (id, content_id, revision_number, author_id, snapshot, diff,
                     created_reason, created_at)
                SELECT $1, $2, COALESCE(MAX(revision_number), 0) + 1, $3,
                       $4::jsonb, $5::jsonb, $6, $7
                FROM post_revisions WHERE content_id = $2
                RETURNING *
                """,
                revision.id,
                revision.content_id,
                revision.author_id,
                json.dumps(data["snapshot"]),
                json.dumps(data["diff"]) if data["diff"] is not None else None,
                revision.created_reason,
                revision.created_at,
            )
        return _row_to_revision(row)

    async def get_revision(self, content_id: str, revision_id: str) -> Revision | None:
        async with self._db.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM post_revisions WHERE content_id = $1 AND id = $2",
                content_id,
                revision_id,
            )
        return _row_to_revision(row) if row else None

    async def list_for_content(self, content_id: str) -> list[Revision]:
        async with self._db.connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM post_revisions WHERE content_id = $1 "
                "ORDER BY revision_number DESC",
                content_id,
            )
        return [_row_to_revision(r) for r in rows]


class PostgresApprovalStore:
    """Persist approval state using PostgreSQL."""

    def __init__(self, dsn: str):
        self.db = PostgresDatabase(dsn)
        self.workflows = PostgresWorkflowRepository(self.db)
        self.assignments = PostgresAssignmentRepository(self.db)
        self.history = PostgresHistoryRepository(self.db)
        self.comments = PostgresCommentRepository(self.db)
        self.revisions = PostgresRevisionRepository(self.db)

    async def commit_transition(
        self,
        assignment: Assignment,
        expected_version: int,
        entry: ApprovalHistoryEntry,
    ) -> Assignment:
        async with self.db.connection() as conn, conn.transaction():
            await _update_assignment(conn, assignment, expected_version)
            await conn.execute(
                """
                INSERT INTO approval_history
                    (id, assignment_id, step_id, actor_id, action, action_details,
                     previous_status, new_status, created_at)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9)
                """,
                entry.id,
                entry.assignment_id,
                entry.step_id,
                entry.actor_id,
                entry.action.value,
                json.dumps(entry.action_details) if entry.action_details is not None else None,
                entry.previous_status.value,
                entry.new_status.value,
                entry.created_at,
            )
        return assignment.model_copy(update={"version": expected_version + 1})
