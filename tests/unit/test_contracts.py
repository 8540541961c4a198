"""Tests for workflow, assignment and history contracts."""

import pytest
from pydantic import ValidationError

from conftest import build_workflow
from postgate.constants import ApprovalAction, AssignmentStatus
from postgate.contracts import (
    ActionDetails,
    Assignment,
    TransitionEvent,
    TransitionRecord,
    Workflow,
    WorkflowStep,
    build_action_details,
)


@pytest.mark.parametrize(
    "details, expected",
    [
        (None, None),
        ({}, None),
        ({"comment": None, "reason": None}, None),
        ({"comment": "Looks good"}, {"comment": "Looks good", "reason": None}),
        ({"reason": "Off-brand"}, {"comment": None, "reason": "Off-brand"}),
        (
            {"comment": "Tone", "reason": "Policy"},
            {"comment": "Tone", "reason": "Policy"},
        ),
        ({"comment": ""}, {"comment": "", "reason": None}),
        (ActionDetails(reason="Typo"), {"comment": None, "reason": "Typo"}),
        (ActionDetails(), None),
    ],
)
def test_build_action_details(details, expected):
    assert build_action_details(details) == expected


def test_action_details_keeps_both_keys_when_one_supplied():
    result = build_action_details({"comment": "ok"})
    assert set(result) == {"comment", "reason"}
    assert result["reason"] is None


def test_workflow_orders_steps_by_step_order():
    wf = Workflow(
        id="wf",
        owner_id="o",
        name="Review",
        steps=[
            WorkflowStep(id="b", workflow_id="wf", step_order=2, step_name="Second", approver_reference="u2"),
            WorkflowStep(id="a", workflow_id="wf", step_order=1, step_name="First", approver_reference="u1"),
        ],
    )
    assert [s.id for s in wf.steps] == ["a", "b"]
    assert wf.first_step().id == "a"
    assert wf.step_after("a").id == "b"
    assert wf.step_after("b") is None
    assert wf.get_step("missing") is None


def test_workflow_rejects_duplicate_step_order():
    with pytest.raises(ValidationError):
        Workflow(
            id="wf",
            owner_id="o",
            name="Review",
            steps=[
                WorkflowStep(workflow_id="wf", step_order=1, step_name="A", approver_reference="u1"),
                WorkflowStep(workflow_id="wf", step_order=1, step_name="B", approver_reference="u2"),
            ],
        )


@pytest.mark.parametrize("orders", [[1, 3], [2, 3], [0, 1]])
def test_workflow_rejects_gaps_in_step_order(orders):
    with pytest.raises(ValidationError, match="expected"):
        Workflow(
            id="wf",
            owner_id="o",
            name="Review",
            steps=[
                WorkflowStep(workflow_id="wf", step_order=n, step_name=f"S{n}", approver_reference="u")
                for n in orders
            ],
        )


def test_workflow_rejects_foreign_step():
    with pytest.raises(ValidationError):
        Workflow(
            id="wf",
            owner_id="o",
            name="Review",
            steps=[
                WorkflowStep(workflow_id="other", step_order=1, step_name="A", approver_reference="u1")
            ],
        )


def test_min_approvals_must_be_positive():
    with pytest.raises(ValidationError):
        WorkflowStep(workflow_id="wf", step_order=1, step_name="A", approver_reference="u", min_approvals=0)


def test_workflow_without_steps_is_not_usable():
    assert not Workflow(owner_id="o", name="Empty").is_usable
    assert not build_workflow(is_active=False).is_usable
    assert build_workflow().is_usable


def test_transition_record_rejects_unknown_action():
    with pytest.raises(ValidationError):
        TransitionRecord(actor_id="a", action="escalate", resulting_status=AssignmentStatus.PENDING)
    record = TransitionRecord(actor_id="a", action="resubmit", resulting_status=AssignmentStatus.PENDING)
    assert record.action == "resubmit"


def test_approvers_for_step_counts_current_cycle_only():
    assignment = Assignment(
        content_id="c",
        owner_id="o",
        workflow_id="wf",
        cycle=2,
        step_history=[
            TransitionRecord(actor_id="e1", action="approve", step_id="s1", resulting_status="pending", cycle=1),
            TransitionRecord(actor_id="e2", action="approve", step_id="s1", resulting_status="pending", cycle=2),
            TransitionRecord(actor_id="e2", action="approve", step_id="s1", resulting_status="pending", cycle=2),
            TransitionRecord(actor_id="e3", action="approve", step_id="s2", resulting_status="pending", cycle=2),
        ],
    )
    assert assignment.approvers_for_step("s1") == {"e2"}


def test_status_terminality():
    assert not AssignmentStatus.PENDING.is_terminal
    assert AssignmentStatus.APPROVED.is_terminal
    assert AssignmentStatus.REJECTED.is_terminal
    assert AssignmentStatus.CHANGES_REQUESTED.is_terminal


def test_transition_event_json():
    event = TransitionEvent(
        assignment_id="a",
        content_id="c",
        workflow_id="wf",
        actor_id="e1",
        action=ApprovalAction.APPROVE,
        previous_status=AssignmentStatus.PENDING,
        status=AssignmentStatus.APPROVED,
        notification_type="post_approved",
        recipient_ids=["o"],
    )
    restored = TransitionEvent.from_json(event.to_json())
    assert restored == event
