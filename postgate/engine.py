"""Step transition engine for multi-step approval workflows."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple, Union

from .actors import ActorDirectory, can_act_on
from .assignments import due_at
from .config import EngineConfig
from .constants import ApprovalAction, AssignmentStatus
from .content import ContentGateway
from .contracts import (
    ActionDetails,
    ApprovalHistoryEntry,
    Assignment,
    BulkResult,
    TransitionEvent,
    TransitionRecord,
    Workflow,
    WorkflowStep,
    build_action_details,
    utcnow,
)
from .events import EmissionStats, TransitionNotifier
from .exceptions import (
    AlreadyTerminal,
    ApprovalError,
    ConcurrentModification,
    InvalidAction,
    NotFound,
    UnauthorizedTransition,
    wrap_store_errors,
)
from .persistence import ApprovalStore
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

Details = Optional[Union[ActionDetails, Mapping[str, Any]]]

NOTIFICATION_TYPES = {
    AssignmentStatus.APPROVED: "post_approved",
    AssignmentStatus.REJECTED: "post_rejected",
    AssignmentStatus.CHANGES_REQUESTED: "changes_requested",
}


def coerce_action(action: ApprovalAction | str) -> ApprovalAction:
    try:
        return ApprovalAction(action)
    except ValueError:
        raise InvalidAction(f"Unsupported approval action: {action!r}") from None


def next_state(
    assignment: Assignment,
    workflow: Workflow,
    step: WorkflowStep,
    actor_id: str,
    action: ApprovalAction,
) -> Tuple[AssignmentStatus, WorkflowStep]:
    """Compute the status and current step that follow ``action``.

    Rejections and change requests close the cycle on the current step. An
    approval advances only once the step's quorum of distinct approvers is
    reached; after the last step the assignment is approved.
    """
    if action is ApprovalAction.REJECT:
        return AssignmentStatus.REJECTED, step
    if action is ApprovalAction.REQUEST_CHANGES:
        return AssignmentStatus.CHANGES_REQUESTED, step

    approvers = assignment.approvers_for_step(step.id) | {actor_id}
    if len(approvers) < step.min_approvals:
        return AssignmentStatus.PENDING, step
    following = workflow.step_after(step.id)
    if following is None:
        return AssignmentStatus.APPROVED, step
    return AssignmentStatus.PENDING, following


class StepTransitionEngine:
    """Validates actor decisions and advances assignments transactionally."""

    def __init__(
        self,
        store: ApprovalStore,
        directory: ActorDirectory,
        notifier: Optional[TransitionNotifier] = None,
        content: Optional[ContentGateway] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._directory = directory
        self._notifier = notifier
        self._content = content
        self._config = config or EngineConfig()
        self._clock = clock
        self.emission_stats = EmissionStats()

    async def advance_workflow_step(
        self,
        content_id: str,
        actor_id: str,
        action: ApprovalAction | str,
        details: Details = None,
        *,
        timeout: Optional[float] = None,
    ) -> Assignment:
        """Apply ``action`` by ``actor_id`` to the content item's current step.

        Args:
            content_id: Content item whose assignment is advanced.
            actor_id: Actor taking the decision.
            action: ``approve``, ``reject`` or ``request_changes``.
            details: Optional ``comment`` and ``reason``.
            timeout: Deadline in seconds for the read-validate-commit phase.
                Notification hand-off happens after commit and is not bound
                by it.

        Returns:
            The committed assignment.

        Raises:
            NotFound: No assignment or workflow for ``content_id``.
            AlreadyTerminal: The assignment is closed.
            UnauthorizedTransition: ``actor_id`` is not an approver of the step.
            ConcurrentModification: The assignment changed since it was read.
            PersistenceError: The store failed.
        """
        action = coerce_action(action)
        transition = self._transition(content_id, actor_id, action, details)
        if timeout is None:
            committed, workflow, entry = await transition
        else:
            committed, workflow, entry = await asyncio.wait_for(transition, timeout)
        await self._after_commit(committed, workflow, entry)
        return committed

    async def advance_with_retry(
        self,
        content_id: str,
        actor_id: str,
        action: ApprovalAction | str,
        details: Details = None,
        *,
        timeout: Optional[float] = None,
    ) -> Assignment:
        """Like :meth:`advance_workflow_step`, retrying concurrent modifications."""
        attempt = 0
        while True:
            try:
                return await self.advance_workflow_step(
                    content_id, actor_id, action, details, timeout=timeout
                )
            except ConcurrentModification:
                attempt += 1
                if attempt > self._config.max_retries:
                    raise
                logger.warning(
                    f"Concurrent modification on content={content_id}; "
                    f"retry {attempt}/{self._config.max_retries}"
                )
                await schedule_retry(
                    attempt,
                    base=self._config.retry_backoff_base,
                    jitter=self._config.retry_jitter,
                )

    async def bulk_advance_workflow(
        self,
        content_ids: Iterable[str],
        actor_id: str,
        decision: ApprovalAction | str = ApprovalAction.APPROVE,
        details: Details = None,
    ) -> BulkResult:
        """Approve or reject several items; failures do not stop the batch."""
        decision = coerce_action(decision)
        if decision is ApprovalAction.REQUEST_CHANGES:
            raise InvalidAction("Bulk decisions support approve or reject only")

        result = BulkResult()
        for content_id in content_ids:
            try:
                await self.advance_with_retry(content_id, actor_id, decision, details)
            except ApprovalError as exc:
                logger.warning(f"Bulk {decision.value} failed for content={content_id}: {exc}")
                result.failed[content_id] = str(exc)
            else:
                result.succeeded.append(content_id)
        return result

    async def _transition(
        self,
        content_id: str,
        actor_id: str,
        action: ApprovalAction,
        details: Details,
    ) -> Tuple[Assignment, Workflow, ApprovalHistoryEntry]:
        with wrap_store_errors("Failed to load assignment"):
            assignment = await self._store.assignments.get_by_content(content_id)
        if assignment is None:
            raise NotFound(f"No approval assignment for content {content_id}")
        with wrap_store_errors("Failed to load workflow"):
            workflow = await self._store.workflows.get_workflow(assignment.workflow_id)
        if workflow is None:
            raise NotFound(
                f"Workflow {assignment.workflow_id} for content {content_id} not found"
            )

        if assignment.is_terminal:
            raise AlreadyTerminal(content_id, assignment.status.value)
        step = workflow.get_step(assignment.current_step_id)
        with wrap_store_errors("Failed to resolve actor"):
            actor = await self._directory.get_actor(actor_id)
        if not can_act_on(actor, step):
            raise UnauthorizedTransition(actor_id, assignment.current_step_id)

        now = self._clock()
        status, resulting_step = next_state(assignment, workflow, step, actor_id, action)
        if status.is_terminal:
            next_due = None
        elif resulting_step.id != step.id:
            next_due = due_at(resulting_step, now)
        else:
            next_due = assignment.next_due_at

        record = TransitionRecord(
            actor_id=actor_id,
            action=action.value,
            step_id=step.id,
            resulting_step_id=resulting_step.id,
            resulting_status=status,
            cycle=assignment.cycle,
            at=now,
        )
        updated = assignment.model_copy(
            update={
                "current_step_id": resulting_step.id,
                "status": status,
                "step_history": [*assignment.step_history, record],
                "next_due_at": next_due,
                "updated_at": now,
            }
        )
        entry = ApprovalHistoryEntry(
            assignment_id=assignment.id,
            step_id=step.id,
            actor_id=actor_id,
            action=action,
            action_details=build_action_details(details),
            previous_status=assignment.status,
            new_status=status,
            created_at=now,
        )
        with wrap_store_errors("Failed to record transition"):
            committed = await self._store.commit_transition(
                updated, assignment.version, entry
            )

        logger.info(
            f"{action.value} by {actor_id} on content={content_id}: "
            f"step {step.step_name} -> {resulting_step.step_name} ({status.value})"
        )
        return committed, workflow, entry

    async def _after_commit(
        self,
        assignment: Assignment,
        workflow: Workflow,
        entry: ApprovalHistoryEntry,
    ) -> None:
        """Mirror status and hand off the event. Never raises."""
        if self._content is not None:
            try:
                await self._content.mirror_status(assignment.content_id, assignment.status)
            except Exception:
                logger.exception(
                    f"Failed to mirror status {assignment.status.value} "
                    f"onto content={assignment.content_id}"
                )

        if self._notifier is None:
            return
        try:
            event = await self._build_event(assignment, workflow, entry)
            await asyncio.wait_for(
                self._notifier.queue_approval_notifications(assignment, event),
                self._config.notify_timeout,
            )
        except Exception as exc:
            self.emission_stats.failed += 1
            self.emission_stats.last_error = str(exc) or type(exc).__name__
            logger.exception(
                f"Failed to queue notifications for assignment={assignment.id}; "
                "transition stays committed"
            )
        else:
            self.emission_stats.emitted += 1

    async def _build_event(
        self,
        assignment: Assignment,
        workflow: Workflow,
        entry: ApprovalHistoryEntry,
    ) -> TransitionEvent:
        previous_step = workflow.get_step(entry.step_id)
        current_step = workflow.get_step(assignment.current_step_id)
        recipients: List[str]
        if assignment.is_terminal:
            notification_type = NOTIFICATION_TYPES[assignment.status]
            recipients = [assignment.owner_id]
        elif current_step is not None and current_step.id != entry.step_id:
            notification_type = "approval_requested"
            recipients = await self._directory.members(
                current_step.approver_type, current_step.approver_reference
            )
        else:
            notification_type = "approval_recorded"
            recipients = [assignment.owner_id]

        return TransitionEvent(
            assignment_id=assignment.id,
            content_id=assignment.content_id,
            workflow_id=workflow.id,
            actor_id=entry.actor_id,
            action=entry.action,
            previous_status=entry.previous_status,
            status=assignment.status,
            previous_step_id=entry.step_id,
            current_step_id=assignment.current_step_id,
            notification_type=notification_type,
            recipient_ids=recipients,
            payload={
                "workflow_name": workflow.name,
                "step_name": current_step.step_name if current_step else None,
                "previous_step_name": previous_step.step_name if previous_step else None,
                "approver": entry.actor_id,
                "status": assignment.status.value,
                "action_details": entry.action_details,
            },
        )
