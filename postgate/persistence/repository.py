"""Repository abstractions for approval workflow persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol, Sequence

from ..actors import Actor
from ..constants import AssignmentStatus
from ..contracts import (
    ApprovalComment,
    ApprovalHistoryEntry,
    Assignment,
    DashboardRow,
    Revision,
    Workflow,
)


class WorkflowRepository(Protocol):
    """Catalog of workflow definitions and their ordered steps."""

    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow together with its steps."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Return the workflow with its steps ordered by ``step_order``."""

    async def list_active_workflows(self, owner_id: str) -> list[Workflow]:
        """Return the owner's active workflows, oldest first."""

    async def find_step_ids_for_actor(self, actor: Actor) -> list[str]:
        """Return ids of steps of active workflows the actor may act on."""


class AssignmentRepository(Protocol):
    """One authoritative assignment row per content item."""

    async def get_by_content(self, content_id: str) -> Assignment | None:
        """Return the assignment for ``content_id``."""

    async def insert_if_absent(self, assignment: Assignment) -> Assignment:
        """Insert ``assignment`` unless one exists for its content item.

        Returns whichever row is stored afterwards, so concurrent callers
        converge on a single assignment.
        """

    async def compare_and_set(
        self, assignment: Assignment, expected_version: int
    ) -> Assignment:
        """Write ``assignment`` if the stored version equals ``expected_version``.

        Raises ``ConcurrentModification`` otherwise. The stored version is
        bumped by one.
        """

    async def list_by_steps(
        self,
        step_ids: Sequence[str],
        statuses: Optional[Iterable[AssignmentStatus]] = None,
    ) -> list[Assignment]:
        """Return assignments whose ``current_step_id`` is in ``step_ids``."""

    async def query_dashboard(self, step_ids: Sequence[str]) -> list[DashboardRow]:
        """Dashboard projection filtered to ``current_step_id IN step_ids``."""

    async def list_for_owner(self, owner_id: str) -> list[Assignment]:
        """Return every assignment (any status) of ``owner_id``."""

    async def list_overdue(self, now: datetime) -> list[Assignment]:
        """Return pending assignments with ``next_due_at`` before ``now``."""


class HistoryRepository(Protocol):
    """Append-only audit log of actor decisions."""

    async def list_for_assignment(
        self, assignment_id: str
    ) -> list[ApprovalHistoryEntry]:
        """Return history entries in insertion order."""


class CommentRepository(Protocol):
    """Review comments attached to content items."""

    async def add_comment(self, comment: ApprovalComment) -> ApprovalComment:
        """Store a new comment and return it."""

    async def get_comment(self, comment_id: str) -> ApprovalComment | None:
        """Return one comment by id."""

    async def list_for_content(self, content_id: str) -> list[ApprovalComment]:
        """Return the content item's comments, oldest first."""

    async def resolve_comment(
        self,
        comment_id: str,
        resolver_id: str,
        resolution: Optional[str],
        at: datetime,
    ) -> ApprovalComment | None:
        """Mark a comment resolved; ``None`` when it does not exist."""


class RevisionRepository(Protocol):
    """Numbered snapshots of content items."""

    async def append_revision(self, revision: Revision) -> Revision:
        """Store ``revision`` under the next free number of its content item.

        The incoming ``revision_number`` is ignored. Numbers start at 1 and
        concurrent appends never share one.
        """

    async def get_revision(self, content_id: str, revision_id: str) -> Revision | None:
        """Return the revision only if it belongs to ``content_id``."""

    async def list_for_content(self, content_id: str) -> list[Revision]:
        """Return the content item's revisions, newest first."""


class ApprovalStore(Protocol):
    """Bundle of the typed repositories plus the transactional transition write."""

    workflows: WorkflowRepository
    assignments: AssignmentRepository
    history: HistoryRepository
    comments: CommentRepository
    revisions: RevisionRepository

    async def commit_transition(
        self,
        assignment: Assignment,
        expected_version: int,
        entry: ApprovalHistoryEntry,
    ) -> Assignment:
        """Atomically update ``assignment`` and append ``entry``.

        Either both writes are visible afterwards or neither is. Raises
        ``ConcurrentModification`` when the stored version no longer equals
        ``expected_version``.
        """
