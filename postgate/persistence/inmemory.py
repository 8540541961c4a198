"""In-memory implementation of the approval store."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from ..actors import Actor, can_act_on
from ..constants import AssignmentStatus
from ..contracts import (
    ApprovalComment,
    ApprovalHistoryEntry,
    Assignment,
    DashboardRow,
    Revision,
    Workflow,
)
from ..exceptions import ConcurrentModification


class InMemoryWorkflowRepository:
    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}

    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_active_workflows(self, owner_id: str) -> list[Workflow]:
        matches = [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if wf.owner_id == owner_id and wf.is_active
        ]
        return sorted(matches, key=lambda wf: wf.created_at)

    async def find_step_ids_for_actor(self, actor: Actor) -> list[str]:
        return [
            step.id
            for wf in self._workflows.values()
            if wf.is_active
            for step in wf.steps
            if can_act_on(actor, step)
        ]

    def _lookup(self, workflow_id: str) -> Optional[Workflow]:
        return self._workflows.get(workflow_id)


class InMemoryAssignmentRepository:
    def __init__(self, workflows: InMemoryWorkflowRepository) -> None:
        self._workflows = workflows
        self._by_content: Dict[str, Assignment] = {}

    async def get_by_content(self, content_id: str) -> Assignment | None:
        found = self._by_content.get(content_id)
        return found.model_copy(deep=True) if found else None

    async def insert_if_absent(self, assignment: Assignment) -> Assignment:
        stored = self._by_content.setdefault(
            assignment.content_id, assignment.model_copy(deep=True)
        )
        return stored.model_copy(deep=True)

    async def compare_and_set(
        self, assignment: Assignment, expected_version: int
    ) -> Assignment:
        return self._swap(assignment, expected_version)

    def _swap(self, assignment: Assignment, expected_version: int) -> Assignment:
        current = self._by_content.get(assignment.content_id)
        if current is None or current.version != expected_version:
            raise ConcurrentModification(assignment.id, expected_version)
        updated = assignment.model_copy(
            deep=True, update={"version": expected_version + 1}
        )
        self._by_content[assignment.content_id] = updated
        return updated.model_copy(deep=True)

    async def list_by_steps(
        self,
        step_ids: Sequence[str],
        statuses: Optional[Iterable[AssignmentStatus]] = None,
    ) -> list[Assignment]:
        wanted = set(statuses) if statuses is not None else None
        return [
            a.model_copy(deep=True)
            for a in self._ordered()
            if a.current_step_id in step_ids and (wanted is None or a.status in wanted)
        ]

    async def query_dashboard(self, step_ids: Sequence[str]) -> list[DashboardRow]:
        rows: List[DashboardRow] = []
        for a in self._ordered():
            if a.current_step_id not in step_ids:
                continue
            wf = self._workflows._lookup(a.workflow_id)
            step = wf.get_step(a.current_step_id) if wf else None
            rows.append(
                DashboardRow(
                    assignment_id=a.id,
                    content_id=a.content_id,
                    owner_id=a.owner_id,
                    workflow_id=a.workflow_id,
                    workflow_name=wf.name if wf else None,
                    current_step_id=a.current_step_id,
                    step_name=step.step_name if step else None,
                    step_order=step.step_order if step else None,
                    status=a.status,
                    next_due_at=a.next_due_at,
                    updated_at=a.updated_at,
                )
            )
        return rows

    async def list_for_owner(self, owner_id: str) -> list[Assignment]:
        return [a.model_copy(deep=True) for a in self._ordered() if a.owner_id == owner_id]

    async def list_overdue(self, now: datetime) -> list[Assignment]:
        return [
            a.model_copy(deep=True)
            for a in self._ordered()
            if a.status is AssignmentStatus.PENDING
            and a.next_due_at is not None
            and a.next_due_at < now
        ]

    def _ordered(self) -> list[Assignment]:
        return sorted(self._by_content.values(), key=lambda a: a.created_at)


class InMemoryHistoryRepository:
    def __init__(self) -> None:
        self._entries: List[ApprovalHistoryEntry] = []

    async def list_for_assignment(
        self, assignment_id: str
    ) -> list[ApprovalHistoryEntry]:
        return [e.model_copy() for e in self._entries if e.assignment_id == assignment_id]

    def _append(self, entry: ApprovalHistoryEntry) -> None:
        self._entries.append(entry.model_copy())


class InMemoryCommentRepository:
    def __init__(self) -> None:
        self._comments: Dict[str, ApprovalComment] = {}

    async def add_comment(self, comment: ApprovalComment) -> ApprovalComment:
        self._comments[comment.id] = comment.model_copy(deep=True)
        return comment.model_copy(deep=True)

    async def get_comment(self, comment_id: str) -> ApprovalComment | None:
        found = self._comments.get(comment_id)
        return found.model_copy(deep=True) if found else None

    async def list_for_content(self, content_id: str) -> list[ApprovalComment]:
        # dicts keep insertion order, which breaks created_at ties
        matches = [c for c in self._comments.values() if c.content_id == content_id]
        return [c.model_copy(deep=True) for c in sorted(matches, key=lambda c: c.created_at)]

    async def resolve_comment(
        self,
        comment_id: str,
        resolver_id: str,
        resolution: Optional[str],
        at: datetime,
    ) -> ApprovalComment | None:
        current = self._comments.get(comment_id)
        if current is None:
            return None
        resolved = current.model_copy(
            update={
                "is_resolved": True,
                "resolved_at": at,
                "resolved_by": resolver_id,
                "resolved_comment": resolution,
                "updated_at": at,
            }
        )
        self._comments[comment_id] = resolved
        return resolved.model_copy(deep=True)


class InMemoryRevisionRepository:
    def __init__(self) -> None:
        self._revisions: Dict[str, List[Revision]] = {}

    async def append_revision(self, revision: Revision) -> Revision:
        revisions = self._revisions.setdefault(revision.content_id, [])
        stored = revision.model_copy(
            deep=True, update={"revision_number": len(revisions) + 1}
        )
        revisions.append(stored)
        return stored.model_copy(deep=True)

    async def get_revision(self, content_id: str, revision_id: str) -> Revision | None:
        for revision in self._revisions.get(content_id, []):
            if revision.id == revision_id:
                return revision.model_copy(deep=True)
        return None

    async def list_for_content(self, content_id: str) -> list[Revision]:
        return [r.model_copy(deep=True) for r in reversed(self._revisions.get(content_id, []))]


class InMemoryApprovalStore:
    """Keep approval state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. ``commit_transition`` performs no
    awaits between its check and its writes, so it is atomic with respect to
    other coroutines on the same loop.
    """

    def __init__(self) -> None:
        self.workflows = InMemoryWorkflowRepository()
        self.assignments = InMemoryAssignmentRepository(self.workflows)
        self.history = InMemoryHistoryRepository()
        self.comments = InMemoryCommentRepository()
        self.revisions = InMemoryRevisionRepository()

    async def commit_transition(
        self,
        assignment: Assignment,
        expected_version: int,
        entry: ApprovalHistoryEntry,
    ) -> Assignment:
        updated = self.assignments._swap(assignment, expected_version)
        self.history._append(entry)
        return updated
