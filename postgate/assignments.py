"""Assignment manager: binds content items to approval workflows."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from .constants import RESUBMIT_ACTION, AssignmentStatus, WorkflowScope
from .content import ContentGateway, ContentRecord, matches_scope
from .contracts import Assignment, TransitionRecord, Workflow, WorkflowStep, utcnow
from .exceptions import (
    ConcurrentModification,
    NotFound,
    WorkflowDefinitionError,
    wrap_store_errors,
)
from .persistence import ApprovalStore

logger = logging.getLogger(__name__)


def due_at(step: WorkflowStep, entered_at: datetime) -> Optional[datetime]:
    """SLA deadline for an assignment entering ``step`` at ``entered_at``."""
    if step.sla_hours is None:
        return None
    return entered_at + timedelta(hours=step.sla_hours)


def select_best_workflow(
    workflows: Iterable[Workflow], content: Optional[ContentRecord]
) -> Optional[Workflow]:
    """Pick the most specific usable workflow that applies to ``content``.

    Scoped matches win over global ones, more filters win over fewer, and
    the oldest workflow breaks remaining ties.
    """
    candidates = [wf for wf in workflows if wf.is_usable and matches_scope(wf, content)]
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda wf: (
            wf.scope is WorkflowScope.GLOBAL,
            -len(wf.scope_filters or {}),
            wf.created_at,
        ),
    )


class AssignmentManager:
    """Creates and fetches the single active assignment of a content item."""

    def __init__(
        self,
        store: ApprovalStore,
        content: Optional[ContentGateway] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._content = content
        self._clock = clock

    async def get_assignment(self, content_id: str) -> Optional[Assignment]:
        with wrap_store_errors("Failed to check existing assignment"):
            return await self._store.assignments.get_by_content(content_id)

    async def ensure_workflow_assignment(
        self,
        content_id: str,
        owner_id: str,
        workflow_id: Optional[str] = None,
    ) -> Optional[Assignment]:
        """Return the content item's assignment, creating it if needed.

        Returns ``None`` when no active workflow of ``owner_id`` applies to
        the content, meaning the item is not subject to approval. An item
        whose last review ended in ``changes_requested`` starts a new review
        cycle on the same assignment.
        """
        existing = await self.get_assignment(content_id)
        if existing is not None:
            if existing.status is AssignmentStatus.CHANGES_REQUESTED:
                return await self._restart_cycle(existing, owner_id)
            return existing

        workflow = await self._select_workflow(content_id, owner_id, workflow_id)
        if workflow is None:
            logger.info(
                f"No approval workflow applies to content={content_id} owner={owner_id}"
            )
            return None

        now = self._clock()
        first = workflow.first_step()
        candidate = Assignment(
            content_id=content_id,
            owner_id=owner_id,
            workflow_id=workflow.id,
            current_step_id=first.id,
            status=AssignmentStatus.PENDING,
            next_due_at=due_at(first, now),
            created_at=now,
            updated_at=now,
        )
        with wrap_store_errors("Failed to create assignment"):
            stored = await self._store.assignments.insert_if_absent(candidate)

        if stored.id != candidate.id:
            logger.info(
                f"Concurrent assignment for content={content_id} already existed; "
                f"using assignment={stored.id}"
            )
        else:
            logger.info(
                f"Assigned content={content_id} to workflow={workflow.id} "
                f"step={first.step_name}"
            )
        return stored

    async def _select_workflow(
        self, content_id: str, owner_id: str, workflow_id: Optional[str]
    ) -> Optional[Workflow]:
        if workflow_id is not None:
            with wrap_store_errors("Failed to load workflow"):
                workflow = await self._store.workflows.get_workflow(workflow_id)
            if workflow is None or workflow.owner_id != owner_id or not workflow.is_active:
                raise NotFound(f"No active workflow {workflow_id} for owner {owner_id}")
            if not workflow.steps:
                raise WorkflowDefinitionError(f"Workflow {workflow_id} has no steps")
            return workflow

        with wrap_store_errors("Failed to list workflows"):
            workflows = await self._store.workflows.list_active_workflows(owner_id)
        content = None
        if self._content is not None and any(
            wf.scope is not WorkflowScope.GLOBAL for wf in workflows
        ):
            with wrap_store_errors("Failed to load content"):
                content = await self._content.get_content(content_id)
        return select_best_workflow(workflows, content)

    async def _restart_cycle(self, existing: Assignment, owner_id: str) -> Optional[Assignment]:
        with wrap_store_errors("Failed to load workflow"):
            workflow = await self._store.workflows.get_workflow(existing.workflow_id)
        if workflow is None or not workflow.is_usable:
            workflow = await self._select_workflow(existing.content_id, owner_id, None)
        if workflow is None:
            logger.info(
                f"No approval workflow applies to resubmitted content={existing.content_id}"
            )
            return None

        now = self._clock()
        first = workflow.first_step()
        cycle = existing.cycle + 1
        record = TransitionRecord(
            actor_id=owner_id,
            action=RESUBMIT_ACTION,
            step_id=existing.current_step_id,
            resulting_step_id=first.id,
            resulting_status=AssignmentStatus.PENDING,
            cycle=cycle,
            at=now,
        )
        restarted = existing.model_copy(
            update={
                "workflow_id": workflow.id,
                "current_step_id": first.id,
                "status": AssignmentStatus.PENDING,
                "cycle": cycle,
                "step_history": [*existing.step_history, record],
                "next_due_at": due_at(first, now),
                "updated_at": now,
            }
        )
        try:
            with wrap_store_errors("Failed to restart assignment"):
                stored = await self._store.assignments.compare_and_set(
                    restarted, existing.version
                )
        except ConcurrentModification:
            # another caller restarted (or acted on) it first
            current = await self.get_assignment(existing.content_id)
            logger.info(
                f"Resubmission of content={existing.content_id} raced; returning current state"
            )
            return current
        logger.info(f"Restarted review of content={existing.content_id} as cycle {cycle}")
        await self._mirror_status(stored)
        return stored

    async def _mirror_status(self, assignment: Assignment) -> None:
        if self._content is None:
            return
        try:
            await self._content.mirror_status(assignment.content_id, assignment.status)
        except Exception:
            logger.exception(
                f"Failed to mirror status {assignment.status.value} "
                f"onto content={assignment.content_id}"
            )
