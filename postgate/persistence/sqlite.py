"""SQLite implementation of the approval store."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar

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

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        scope TEXT NOT NULL DEFAULT 'global',
        scope_filters TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_by TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_steps (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
        step_order INTEGER NOT NULL,
        step_name TEXT NOT NULL,
        approver_type TEXT NOT NULL,
        approver_reference TEXT NOT NULL,
        min_approvals INTEGER NOT NULL DEFAULT 1 CHECK (min_approvals >= 1),
        auto_escalate_after_hours INTEGER,
        is_optional INTEGER NOT NULL DEFAULT 0,
        sla_hours INTEGER,
        UNIQUE (workflow_id, step_order)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS post_approval_assignments (
        id TEXT PRIMARY KEY,
        content_id TEXT NOT NULL UNIQUE,
        owner_id TEXT NOT NULL,
        workflow_id TEXT NOT NULL REFERENCES workflows(id),
        current_step_id TEXT REFERENCES workflow_steps(id),
        status TEXT NOT NULL CHECK (
            status IN ('pending', 'approved', 'rejected', 'changes_requested')
        ),
        step_history TEXT NOT NULL DEFAULT '[]',
        cycle INTEGER NOT NULL DEFAULT 1,
        version INTEGER NOT NULL DEFAULT 0,
        next_due_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approval_history (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        assignment_id TEXT NOT NULL REFERENCES post_approval_assignments(id),
        step_id TEXT REFERENCES workflow_steps(id),
        actor_id TEXT NOT NULL,
        action TEXT NOT NULL,
        action_details TEXT,
        previous_status TEXT NOT NULL,
        new_status TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approval_comments (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        content_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        comment TEXT NOT NULL,
        comment_type TEXT NOT NULL DEFAULT 'feedback' CHECK (
            comment_type IN ('feedback', 'approval', 'rejection', 'revision_request')
        ),
        parent_comment_id TEXT REFERENCES approval_comments(id) ON DELETE CASCADE,
        thread_id TEXT,
        mentions TEXT,
        workflow_step_id TEXT REFERENCES workflow_steps(id) ON DELETE SET NULL,
        is_resolved INTEGER NOT NULL DEFAULT 0,
        resolved_at TEXT,
        resolved_by TEXT,
        resolved_comment TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS post_revisions (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        content_id TEXT NOT NULL,
        revision_number INTEGER NOT NULL,
        author_id TEXT NOT NULL,
        snapshot TEXT NOT NULL,
        diff TEXT,
        created_reason TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (content_id, revision_number)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_assignments_step ON post_approval_assignments(current_step_id)",
    "CREATE INDEX IF NOT EXISTS idx_assignments_owner ON post_approval_assignments(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_history_assignment ON approval_history(assignment_id)",
    "CREATE INDEX IF NOT EXISTS idx_comments_content ON approval_comments(content_id)",
    "CREATE INDEX IF NOT EXISTS idx_comments_thread ON approval_comments(thread_id)",
)

ASSIGNMENT_COLUMNS = (
    "id, content_id, owner_id, workflow_id, current_step_id, status, step_history, "
    "cycle, version, next_due_at, created_at, updated_at"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class TransactionCancelled(Exception):
    """The awaiting caller gave up before the transaction reached COMMIT."""


class CommitGate:
    """Decides, exactly once, whether a worker-thread transaction may commit.

    The event loop calls :meth:`cancel` when the awaiting caller is
    cancelled; the worker thread calls :meth:`enter_commit` right before
    ``COMMIT``. Whichever comes first wins.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._committing = False

    def cancel(self) -> bool:
        """Return ``False`` when the transaction is already committing."""
        with self._lock:
            if self._committing:
                return False
            self._cancelled = True
            return True

    def enter_commit(self) -> bool:
        with self._lock:
            if self._cancelled:
                return False
            self._committing = True
            return True


class SQLiteDatabase:
    """Connection-per-call helper. Transactions use ``BEGIN IMMEDIATE``."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._inflight: set[asyncio.Future] = set()
        self._ensure_schema()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path, timeout=30, isolation_level=None, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self) -> None:
        with closing(self.connect()) as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with closing(self.connect()) as conn:
            return conn.execute(query, params).fetchone()

    def fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with closing(self.connect()) as conn:
            return conn.execute(query, params).fetchall()

    def snapshot(self, read: Callable[[sqlite3.Connection], T]) -> T:
        """Run several reads inside one deferred transaction."""
        with closing(self.connect()) as conn:
            conn.execute("BEGIN")
            try:
                return read(conn)
            finally:
                conn.execute("ROLLBACK")

    def transaction(
        self,
        work: Callable[[sqlite3.Connection], T],
        gate: Optional[CommitGate] = None,
    ) -> T:
        with closing(self.connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                result = work(conn)
                if gate is not None and not gate.enter_commit():
                    raise TransactionCancelled(f"Rolled back write to {self.db_path}")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return result

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(fn, *args)

    async def write(self, work: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``work`` in a transaction on a worker thread.

        Cancelling the caller before the thread reaches ``COMMIT`` rolls the
        transaction back. Once ``COMMIT`` has started the write stands and
        its result is returned even to a cancelled caller.
        """
        gate = CommitGate()
        future = asyncio.ensure_future(asyncio.to_thread(self.transaction, work, gate))
        self._inflight.add(future)
        future.add_done_callback(self._forget)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            if gate.cancel():
                raise
            logger.info("Caller cancelled after COMMIT started; keeping the write")
            return await future

    def _forget(self, future: asyncio.Future) -> None:
        self._inflight.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if isinstance(exc, TransactionCancelled):
            logger.info(str(exc))

    async def wait_idle(self) -> None:
        """Wait until every write started through :meth:`write` has finished."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)


def _row_to_assignment(row: sqlite3.Row) -> Assignment:
    return Assignment(
        id=row["id"],
        content_id=row["content_id"],
        owner_id=row["owner_id"],
        workflow_id=row["workflow_id"],
        current_step_id=row["current_step_id"],
        status=AssignmentStatus(row["status"]),
        step_history=[
            TransitionRecord.model_validate(item)
            for item in json.loads(row["step_history"] or "[]")
        ],
        cycle=row["cycle"],
        version=row["version"],
        next_due_at=_parse_ts(row["next_due_at"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _history_json(assignment: Assignment) -> str:
    return json.dumps([r.model_dump(mode="json") for r in assignment.step_history])


def _update_assignment(
    conn: sqlite3.Connection, assignment: Assignment, expected_version: int
) -> None:
    cur = conn.execute(
        """
        UPDATE post_approval_assignments
        SET workflow_id = ?, current_step_id = ?, status = ?, step_history = ?,
            cycle = ?, next_due_at = ?, updated_at = ?, version = version + 1
        WHERE id = ? AND version = ?
        """,
        (
            assignment.workflow_id,
            assignment.current_step_id,
            assignment.status.value,
            _history_json(assignment),
            assignment.cycle,
            _ts(assignment.next_due_at),
            _ts(assignment.updated_at),
            assignment.id,
            expected_version,
        ),
    )
    if cur.rowcount == 0:
        raise ConcurrentModification(assignment.id, expected_version)


class SQLiteWorkflowRepository:
    def __init__(self, db: SQLiteDatabase) -> None:
        self._db = db

    def _save(self, conn: sqlite3.Connection, workflow: Workflow) -> None:
        conn.execute(
            """
            INSERT INTO workflows
                (id, owner_id, name, description, scope, scope_filters, is_active, created_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                owner_id = excluded.owner_id, name = excluded.name,
                description = excluded.description, scope = excluded.scope,
                scope_filters = excluded.scope_filters, is_active = excluded.is_active
            """,
            (
                workflow.id,
                workflow.owner_id,
                workflow.name,
                workflow.description,
                workflow.scope.value,
                json.dumps(workflow.scope_filters) if workflow.scope_filters else None,
                int(workflow.is_active),
                workflow.created_by,
                _ts(workflow.created_at),
            ),
        )
        keep = [s.id for s in workflow.steps]
        conn.execute(
            "DELETE FROM workflow_steps WHERE workflow_id = ? "
            f"AND id NOT IN ({_placeholders(keep)})",
            (workflow.id, *keep),
        )
        conn.executemany(
            """
            INSERT INTO workflow_steps
                (id, workflow_id, step_order, step_name, approver_type, approver_reference,
                 min_approvals, auto_escalate_after_hours, is_optional, sla_hours)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                step_order = excluded.step_order, step_name = excluded.step_name,
                approver_type = excluded.approver_type,
                approver_reference = excluded.approver_reference,
                min_approvals = excluded.min_approvals,
                auto_escalate_after_hours = excluded.auto_escalate_after_hours,
                is_optional = excluded.is_optional, sla_hours = excluded.sla_hours
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
                    int(s.is_optional),
                    s.sla_hours,
                )
                for s in workflow.steps
            ],
        )

    async def save_workflow(self, workflow: Workflow) -> None:
        await self._db.write(lambda conn: self._save(conn, workflow))

    def _load(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[Workflow]:
        workflows: list[Workflow] = []
        for row in rows:
            step_rows = conn.execute(
                "SELECT * FROM workflow_steps WHERE workflow_id = ? ORDER BY step_order",
                (row["id"],),
            ).fetchall()
            workflows.append(
                Workflow(
                    id=row["id"],
                    owner_id=row["owner_id"],
                    name=row["name"],
                    description=row["description"],
                    scope=row["scope"],
                    scope_filters=json.loads(row["scope_filters"]) if row["scope_filters"] else None,
                    is_active=bool(row["is_active"]),
                    created_by=row["created_by"],
                    created_at=_parse_ts(row["created_at"]),
                    steps=[
                        WorkflowStep(
                            id=s["id"],
                            workflow_id=s["workflow_id"],
                            step_order=s["step_order"],
                            step_name=s["step_name"],
                            approver_type=s["approver_type"],
                            approver_reference=s["approver_reference"],
                            min_approvals=s["min_approvals"],
                            auto_escalate_after_hours=s["auto_escalate_after_hours"],
                            is_optional=bool(s["is_optional"]),
                            sla_hours=s["sla_hours"],
                        )
                        for s in step_rows
                    ],
                )
            )
        return workflows

    def _get(self, conn: sqlite3.Connection, workflow_id: str) -> Workflow | None:
        row = conn.execute("SELECT * FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
        return self._load(conn, [row])[0] if row else None

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        return await self._db.run(self._db.snapshot, lambda conn: self._get(conn, workflow_id))

    def _list_active(self, conn: sqlite3.Connection, owner_id: str) -> list[Workflow]:
        rows = conn.execute(
            "SELECT * FROM workflows WHERE owner_id = ? AND is_active = 1 ORDER BY created_at",
            (owner_id,),
        ).fetchall()
        return self._load(conn, rows)

    async def list_active_workflows(self, owner_id: str) -> list[Workflow]:
        return await self._db.run(
            self._db.snapshot, lambda conn: self._list_active(conn, owner_id)
        )

    async def find_step_ids_for_actor(self, actor: Actor) -> list[str]:
        clauses = ["(s.approver_type = ? AND s.approver_reference = ?)"]
        params: list[Any] = [ApproverType.USER.value, actor.id]
        for approver_type, refs in (
            (ApproverType.ROLE, sorted(actor.roles)),
            (ApproverType.TEAM, sorted(actor.teams)),
        ):
            if refs:
                clauses.append(
                    f"(s.approver_type = ? AND s.approver_reference IN ({_placeholders(refs)}))"
                )
                params.extend([approver_type.value, *refs])
        rows = await self._db.run(
            self._db.fetchall,
            f"""
            SELECT s.id FROM workflow_steps s
            JOIN workflows w ON w.id = s.workflow_id
            WHERE w.is_active = 1 AND ({' OR '.join(clauses)})
            ORDER BY w.created_at, s.step_order
            """,
            *params,
        )
        return [r["id"] for r in rows]


class SQLiteAssignmentRepository:
    def __init__(self, db: SQLiteDatabase) -> None:
        self._db = db

    async def get_by_content(self, content_id: str) -> Assignment | None:
        row = await self._db.run(
            self._db.fetchone,
            f"SELECT {ASSIGNMENT_COLUMNS} FROM post_approval_assignments WHERE content_id = ?",
            content_id,
        )
        return _row_to_assignment(row) if row else None

    def _insert_or_fetch(self, conn: sqlite3.Connection, assignment: Assignment) -> Assignment:
        conn.execute(
            f"""
            INSERT INTO post_approval_assignments ({ASSIGNMENT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (content_id) DO NOTHING
            """,
            (
                assignment.id,
                assignment.content_id,
                assignment.owner_id,
                assignment.workflow_id,
                assignment.current_step_id,
                assignment.status.value,
                _history_json(assignment),
                assignment.cycle,
                assignment.version,
                _ts(assignment.next_due_at),
                _ts(assignment.created_at),
                _ts(assignment.updated_at),
            ),
        )
        row = conn.execute(
            f"SELECT {ASSIGNMENT_COLUMNS} FROM post_approval_assignments WHERE content_id = ?",
            (assignment.content_id,),
        ).fetchone()
        return _row_to_assignment(row)

    async def insert_if_absent(self, assignment: Assignment) -> Assignment:
        return await self._db.write(lambda conn: self._insert_or_fetch(conn, assignment))

    async def compare_and_set(
        self, assignment: Assignment, expected_version: int
    ) -> Assignment:
        def work(conn: sqlite3.Connection) -> None:
            _update_assignment(conn, assignment, expected_version)

        await self._db.write(work)
        return assignment.model_copy(update={"version": expected_version + 1})

    async def list_by_steps(
        self,
        step_ids: Sequence[str],
        statuses: Optional[Iterable[AssignmentStatus]] = None,
    ) -> list[Assignment]:
        if not step_ids:
            return []
        query = (
            f"SELECT {ASSIGNMENT_COLUMNS} FROM post_approval_assignments "
            f"WHERE current_step_id IN ({_placeholders(step_ids)})"
        )
        params: list[Any] = list(step_ids)
        if statuses is not None:
            wanted = [s.value for s in statuses]
            query += f" AND status IN ({_placeholders(wanted)})"
            params.extend(wanted)
        rows = await self._db.run(self._db.fetchall, query + " ORDER BY created_at", *params)
        return [_row_to_assignment(r) for r in rows]

    async def query_dashboard(self, step_ids: Sequence[str]) -> list[DashboardRow]:
        if not step_ids:
            return []
        rows = await self._db.run(
            self._db.fetchall,
            f"""
            SELECT a.id AS assignment_id, a.content_id, a.owner_id, a.workflow_id,
                   w.name AS workflow_name, a.current_step_id, s.step_name, s.step_order,
                   a.status, a.next_due_at, a.updated_at
            FROM post_approval_assignments a
            LEFT JOIN workflows w ON w.id = a.workflow_id
            LEFT JOIN workflow_steps s ON s.id = a.current_step_id
            WHERE a.current_step_id IN ({_placeholders(step_ids)})
            ORDER BY a.created_at
            """,
            *step_ids,
        )
        return [
            DashboardRow(
                assignment_id=r["assignment_id"],
                content_id=r["content_id"],
                owner_id=r["owner_id"],
                workflow_id=r["workflow_id"],
                workflow_name=r["workflow_name"],
                current_step_id=r["current_step_id"],
                step_name=r["step_name"],
                step_order=r["step_order"],
                status=AssignmentStatus(r["status"]),
                next_due_at=_parse_ts(r["next_due_at"]),
                updated_at=_parse_ts(r["updated_at"]),
            )
            for r in rows
        ]

    async def list_for_owner(self, owner_id: str) -> list[Assignment]:
        rows = await self._db.run(
            self._db.fetchall,
            f"SELECT {ASSIGNMENT_COLUMNS} FROM post_approval_assignments "
            "WHERE owner_id = ? ORDER BY created_at",
            owner_id,
        )
        return [_row_to_assignment(r) for r in rows]

    async def list_overdue(self, now: datetime) -> list[Assignment]:
        rows = await self._db.run(
            self._db.fetchall,
            f"SELECT {ASSIGNMENT_COLUMNS} FROM post_approval_assignments "
            "WHERE status = 'pending' AND next_due_at IS NOT NULL ORDER BY next_due_at",
        )
        return [a for a in map(_row_to_assignment, rows) if a.next_due_at < now]


class SQLiteHistoryRepository:
    def __init__(self, db: SQLiteDatabase) -> None:
        self._db = db

    async def list_for_assignment(
        self, assignment_id: str
    ) -> list[ApprovalHistoryEntry]:
        rows = await self._db.run(
            self._db.fetchall,
            "SELECT * FROM approval_history WHERE assignment_id = ? ORDER BY seq",
            assignment_id,
        )
        return [
            ApprovalHistoryEntry(
                id=r["id"],
                assignment_id=r["assignment_id"],
                step_id=r["step_id"],
                actor_id=r["actor_id"],
                action=r["action"],
                action_details=json.loads(r["action_details"]) if r["action_details"] else None,
                previous_status=r["previous_status"],
                new_status=r["new_status"],
                created_at=_parse_ts(r["created_at"]),
            )
            for r in rows
        ]


def _row_to_comment(row: sqlite3.Row) -> ApprovalComment:
    return ApprovalComment(
        id=row["id"],
        content_id=row["content_id"],
        user_id=row["user_id"],
        comment=row["comment"],
        comment_type=row["comment_type"],
        parent_comment_id=row["parent_comment_id"],
        thread_id=row["thread_id"],
        mentions=json.loads(row["mentions"]) if row["mentions"] else None,
        workflow_step_id=row["workflow_step_id"],
        is_resolved=bool(row["is_resolved"]),
        resolved_at=_parse_ts(row["resolved_at"]),
        resolved_by=row["resolved_by"],
        resolved_comment=row["resolved_comment"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


class SQLiteCommentRepository:
    def __init__(self, db: SQLiteDatabase) -> None:
        self._db = db

    def _insert(self, conn: sqlite3.Connection, comment: ApprovalComment) -> None:
        conn.execute(
            """
            INSERT INTO approval_comments
                (id, content_id, user_id, comment, comment_type, parent_comment_id,
                 thread_id, mentions, workflow_step_id, is_resolved, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                comment.id,
                comment.content_id,
                comment.user_id,
                comment.comment,
                comment.comment_type.value,
                comment.parent_comment_id,
                comment.thread_id,
                json.dumps(comment.mentions) if comment.mentions else None,
                comment.workflow_step_id,
                int(comment.is_resolved),
                _ts(comment.created_at),
                _ts(comment.updated_at),
            ),
        )

    async def add_comment(self, comment: ApprovalComment) -> ApprovalComment:
        await self._db.write(lambda conn: self._insert(conn, comment))
        return comment

    async def get_comment(self, comment_id: str) -> ApprovalComment | None:
        row = await self._db.run(
            self._db.fetchone, "SELECT * FROM approval_comments WHERE id = ?", comment_id
        )
        return _row_to_comment(row) if row else None

    async def list_for_content(self, content_id: str) -> list[ApprovalComment]:
        rows = await self._db.run(
            self._db.fetchall,
            "SELECT * FROM approval_comments WHERE content_id = ? ORDER BY created_at, seq",
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
        def work(conn: sqlite3.Connection) -> sqlite3.Row | None:
            conn.execute(
                """
                UPDATE approval_comments
                SET is_resolved = 1, resolved_at = ?, resolved_by = ?,
                    resolved_comment = ?, updated_at = ?
                WHERE id = ?
                """,
                (_ts(at), resolver_id, resolution, _ts(at), comment_id),
            )
            return conn.execute(
                "SELECT * FROM approval_comments WHERE id = ?", (comment_id,)
            ).fetchone()

        row = await self._db.write(work)
        return _row_to_comment(row) if row else None


def _row_to_revision(row: sqlite3.Row) -> Revision:
    return Revision(
        id=row["id"],
        content_id=row["content_id"],
        revision_number=row["revision_number"],
        author_id=row["author_id"],
        snapshot=json.loads(row["snapshot"]),
        diff=json.loads(row["diff"]) if row["diff"] else None,
        created_reason=row["created_reason"],
        created_at=_parse_ts(row["created_at"]),
    )


class SQLiteRevisionRepository:
    def __init__(self, db: SQLiteDatabase) -> None:
        self._db = db

    def _append(self, conn: sqlite3.Connection, revision: Revision) -> Revision:
        (number,) = conn.execute(
            "SELECT COALESCE(MAX(revision_number), 0) + 1 FROM post_revisions "
            "WHERE content_id = ?",
            (revision.content_id,),
        ).fetchone()
        stored = revision.model_copy(update={"revision_number": number})
        data = stored.model_dump(mode="json", include={"snapshot", "diff"})
        conn.execute(
            """
            INSERT INTO post_revisions
                (id, content_id, revision_number, author_id, snapshot, diff,
                 created_reason, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stored.id,
                stored.content_id,
                number,
                stored.author_id,
                json.dumps(data["snapshot"]),
                json.dumps(data["diff"]) if data["diff"] is not None else None,
                stored.created_reason,
                _ts(stored.created_at),
            ),
        )
        return stored

    async def append_revision(self, revision: Revision) -> Revision:
        return await self._db.write(lambda conn: self._append(conn, revision))

    async def get_revision(self, content_id: str, revision_id: str) -> Revision | None:
        row = await self._db.run(
            self._db.fetchone,
            "SELECT * FROM post_revisions WHERE content_id = ? AND id = ?",
            content_id,
            revision_id,
        )
        return _row_to_revision(row) if row else None

    async def list_for_content(self, content_id: str) -> list[Revision]:
        rows = await self._db.run(
            self._db.fetchall,
            "SELECT * FROM post_revisions WHERE content_id = ? ORDER BY revision_number DESC",
            content_id,
        )
        return [_row_to_revision(r) for r in rows]


def _insert_history(conn: sqlite3.Connection, entry: ApprovalHistoryEntry) -> None:
    conn.execute(
        """
        INSERT INTO approval_history
            (id, assignment_id, step_id, actor_id, action, action_details,
             previous_status, new_status, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.id,
            entry.assignment_id,
            entry.step_id,
            entry.actor_id,
            entry.action.value,
            json.dumps(entry.action_details) if entry.action_details is not None else None,
            entry.previous_status.value,
            entry.new_status.value,
            _ts(entry.created_at),
        ),
    )


class SQLiteApprovalStore:
    """Persist approval state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db = SQLiteDatabase(db_path)
        self.workflows = SQLiteWorkflowRepository(self.db)
        self.assignments = SQLiteAssignmentRepository(self.db)
        self.history = SQLiteHistoryRepository(self.db)
        self.comments = SQLiteCommentRepository(self.db)
        self.revisions = SQLiteRevisionRepository(self.db)

    async def commit_transition(
        self,
        assignment: Assignment,
        expected_version: int,
        entry: ApprovalHistoryEntry,
    ) -> Assignment:
        def work(conn: sqlite3.Connection) -> None:
            _update_assignment(conn, assignment, expected_version)
            _insert_history(conn, entry)

        await self.db.write(work)
        return assignment.model_copy(update={"version": expected_version + 1})
