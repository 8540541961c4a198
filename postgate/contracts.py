"""Core data contracts for the approval workflow engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, model_validator

from .constants import (
    RESUBMIT_ACTION,
    ApprovalAction,
    ApproverType,
    AssignmentStatus,
    CommentType,
    WorkflowScope,
)

SUMMARY_LENGTH = 80


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class WorkflowStep(BaseModel):
    """One stage of a workflow's ordered approval sequence."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    step_order: int
    step_name: str
    approver_type: ApproverType = ApproverType.USER
    approver_reference: str
    min_approvals: int = Field(default=1, ge=1)
    auto_escalate_after_hours: Optional[int] = None
    is_optional: bool = False
    sla_hours: Optional[int] = None


class Workflow(BaseModel):
    """A named, ordered approval sequence owned by one actor."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str
    description: Optional[str] = None
    scope: WorkflowScope = WorkflowScope.GLOBAL
    scope_filters: Optional[Dict[str, Any]] = None
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    steps: List[WorkflowStep] = Field(default_factory=list)

    @model_validator(mode="after")
    def _order_steps(self) -> "Workflow":
        # step_order runs 1..n without gaps
        self.steps.sort(key=lambda step: step.step_order)
        previous: Optional[int] = None
        for expected, step in enumerate(self.steps, start=1):
            if step.workflow_id != self.id:
                raise ValueError(
                    f"Step {step.id} belongs to workflow {step.workflow_id}, not {self.id}"
                )
            if step.step_order == previous:
                raise ValueError(
                    f"Workflow {self.id} has duplicate step_order {step.step_order}"
                )
            previous = step.step_order
            if step.step_order != expected:
                raise ValueError(
                    f"Workflow {self.id} step {step.id} has step_order "
                    f"{step.step_order}, expected {expected}"
                )
        return self

    @property
    def is_usable(self) -> bool:
        return self.is_active and bool(self.steps)

    def first_step(self) -> Optional[WorkflowStep]:
        return self.steps[0] if self.steps else None

    def get_step(self, step_id: Optional[str]) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_after(self, step_id: str) -> Optional[WorkflowStep]:
        """Return the step following ``step_id`` or ``None`` if it is the last."""
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return self.steps[index + 1] if index + 1 < len(self.steps) else None
        return None


class ActionDetails(BaseModel):
    """Free-text input an actor may attach to a decision."""

    comment: Optional[str] = None
    reason: Optional[str] = None


def build_action_details(
    details: ActionDetails | Mapping[str, Any] | None,
) -> Optional[Dict[str, Optional[str]]]:
    """Return the ``action_details`` value stored with a history entry.

    ``None`` when neither field was supplied; otherwise both keys are present
    and the missing one is an explicit ``None``.
    """
    if details is None:
        return None
    if isinstance(details, ActionDetails):
        comment, reason = details.comment, details.reason
    else:
        comment, reason = details.get("comment"), details.get("reason")
    if comment is None and reason is None:
        return None
    return {"comment": comment, "reason": reason}


class TransitionRecord(BaseModel):
    """Entry of an assignment's ordered ``step_history``."""

    actor_id: str
    action: str
    step_id: Optional[str] = None
    resulting_step_id: Optional[str] = None
    resulting_status: AssignmentStatus
    cycle: int = Field(default=1, ge=1)
    at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _known_action(self) -> "TransitionRecord":
        allowed = {action.value for action in ApprovalAction} | {RESUBMIT_ACTION}
        if self.action not in allowed:
            raise ValueError(f"Unknown transition action: {self.action}")
        return self


class Assignment(BaseModel):
    """Live binding of one content item to a workflow and its current step."""

    id: str = Field(default_factory=new_id)
    content_id: str
    owner_id: str
    workflow_id: str
    current_step_id: Optional[str] = None
    status: AssignmentStatus = AssignmentStatus.PENDING
    step_history: List[TransitionRecord] = Field(default_factory=list)
    cycle: int = Field(default=1, ge=1)
    version: int = 0
    next_due_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def approvers_for_step(self, step_id: str) -> set[str]:
        """Distinct actors who approved ``step_id`` in the current cycle."""
        return {
            record.actor_id
            for record in self.step_history
            if record.cycle == self.cycle
            and record.step_id == step_id
            and record.action == ApprovalAction.APPROVE.value
        }


class ApprovalHistoryEntry(BaseModel):
    """Immutable audit record of one actor decision."""

    id: str = Field(default_factory=new_id)
    assignment_id: str
    step_id: Optional[str] = None
    actor_id: str
    action: ApprovalAction
    action_details: Optional[Dict[str, Optional[str]]] = None
    previous_status: AssignmentStatus
    new_status: AssignmentStatus
    created_at: datetime = Field(default_factory=utcnow)


class TransitionEvent(BaseModel):
    """Outbound message emitted after a transition commits."""

    event_id: str = Field(default_factory=new_id)
    assignment_id: str
    content_id: str
    workflow_id: str
    actor_id: str
    action: ApprovalAction
    previous_status: AssignmentStatus
    status: AssignmentStatus
    previous_step_id: Optional[str] = None
    current_step_id: Optional[str] = None
    notification_type: str
    recipient_ids: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "TransitionEvent":
        return cls.model_validate_json(data)


class DashboardRow(BaseModel):
    """Projection row of the manager dashboard."""

    assignment_id: str
    content_id: str
    owner_id: str
    workflow_id: str
    workflow_name: Optional[str] = None
    current_step_id: Optional[str] = None
    step_name: Optional[str] = None
    step_order: Optional[int] = None
    status: AssignmentStatus
    next_due_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ApprovalStats(BaseModel):
    """Aggregate counts for an owner's assignments."""

    owner_id: str
    total: int = 0
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    changes_requested: int = 0
    pending_by_step: Dict[str, int] = Field(default_factory=dict)
    avg_approval_hours: Optional[float] = None


class BulkResult(BaseModel):
    """Outcome of a bulk decision across several content items."""

    succeeded: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)


class ApprovalComment(BaseModel):
    """Reviewer feedback on a content item, threaded under a root comment."""

    id: str = Field(default_factory=new_id)
    content_id: str
    user_id: str
    comment: str = Field(min_length=1)
    comment_type: CommentType = CommentType.FEEDBACK
    parent_comment_id: Optional[str] = None
    thread_id: Optional[str] = None
    mentions: Optional[List[str]] = None
    workflow_step_id: Optional[str] = None
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_comment: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _root_owns_thread(self) -> "ApprovalComment":
        if self.thread_id is None and self.parent_comment_id is None:
            self.thread_id = self.id
        return self


class Revision(BaseModel):
    """Numbered snapshot of a content item's editable fields."""

    id: str = Field(default_factory=new_id)
    content_id: str
    # assigned by the store on append
    revision_number: int = Field(default=0, ge=0)
    author_id: str
    snapshot: Dict[str, Any]
    diff: Optional[Dict[str, Any]] = None
    created_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def summary(self) -> str:
        """Short label: the collapsed text, else the reason, else the number."""
        text = self.snapshot.get("content")
        normalized = " ".join(text.split()) if isinstance(text, str) else ""
        if normalized:
            if len(normalized) > SUMMARY_LENGTH:
                return normalized[: SUMMARY_LENGTH - 3] + "…"
            return normalized
        if self.created_reason:
            return self.created_reason
        return f"Revision #{self.revision_number}"
