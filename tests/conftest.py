import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from postgate import (
    Actor,
    ApproverType,
    StaticActorDirectory,
    Workflow,
    WorkflowScope,
    WorkflowStep,
)
from postgate.persistence import InMemoryApprovalStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; ``advance`` moves it forward."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class YieldingDirectory(StaticActorDirectory):
    """Directory that yields to the event loop on every lookup."""

    async def get_actor(self, actor_id: str) -> Actor:
        await asyncio.sleep(0)
        return await super().get_actor(actor_id)


def build_workflow(
    workflow_id: str = "wf-1",
    owner_id: str = "owner-1",
    steps: List[Dict[str, Any]] | None = None,
    **kwargs: Any,
) -> Workflow:
    """Workflow whose steps are ``{workflow_id}-step-{n}``.

    Default: editor role approves first, then user ``legal-1``.
    """
    if steps is None:
        steps = [
            {"approver_type": ApproverType.ROLE, "approver_reference": "editor"},
            {"approver_type": ApproverType.USER, "approver_reference": "legal-1"},
        ]
    return Workflow(
        id=workflow_id,
        owner_id=owner_id,
        name=kwargs.pop("name", f"Workflow {workflow_id}"),
        steps=[
            WorkflowStep(
                id=spec.pop("id", f"{workflow_id}-step-{n}"),
                workflow_id=workflow_id,
                step_order=n,
                step_name=spec.pop("step_name", f"Step {n}"),
                **spec,
            )
            for n, spec in enumerate((dict(s) for s in steps), start=1)
        ],
        **kwargs,
    )


def build_directory(cls=StaticActorDirectory) -> StaticActorDirectory:
    return cls(
        [
            Actor(id="editor-1", roles={"editor"}),
            Actor(id="editor-2", roles={"editor"}),
            Actor(id="legal-1"),
            Actor(id="reviewer-1", teams={"review-team"}),
            Actor(id="reviewer-2", teams={"review-team"}),
            Actor(id="outsider"),
        ]
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryApprovalStore:
    return InMemoryApprovalStore()


@pytest.fixture
def directory() -> StaticActorDirectory:
    return build_directory()


@pytest.fixture
def scoped_workflow() -> Workflow:
    return build_workflow(
        "wf-news",
        scope=WorkflowScope.CONTENT_TYPE,
        scope_filters={"content_type": ["news", "press"]},
    )
