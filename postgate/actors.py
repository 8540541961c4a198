"""Actor directory: who holds which roles and teams."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Protocol

from pydantic import BaseModel, Field

from .constants import ApproverType
from .contracts import WorkflowStep


class Actor(BaseModel):
    """An identity that can act on approval steps."""

    id: str
    roles: set[str] = Field(default_factory=set)
    teams: set[str] = Field(default_factory=set)


class ActorDirectory(Protocol):
    """Lookup of actor memberships, provided by the host application."""

    async def get_actor(self, actor_id: str) -> Actor:
        """Return the actor; unknown actors have no roles or teams."""

    async def members(self, approver_type: ApproverType, reference: str) -> List[str]:
        """Return the actor ids designated by an approver reference."""


def can_act_on(actor: Actor, step: Optional[WorkflowStep]) -> bool:
    """Return ``True`` when ``actor`` is an approver of ``step``."""
    if step is None:
        return False
    if step.approver_type is ApproverType.USER:
        return step.approver_reference == actor.id
    if step.approver_type is ApproverType.ROLE:
        return step.approver_reference in actor.roles
    return step.approver_reference in actor.teams


class StaticActorDirectory:
    """In-memory directory seeded up front. Used by tests and the CLI."""

    def __init__(self, actors: Iterable[Actor] = ()) -> None:
        self._actors: Dict[str, Actor] = {actor.id: actor for actor in actors}

    def add(self, actor: Actor) -> None:
        self._actors[actor.id] = actor

    async def get_actor(self, actor_id: str) -> Actor:
        return self._actors.get(actor_id) or Actor(id=actor_id)

    async def members(self, approver_type: ApproverType, reference: str) -> List[str]:
        if approver_type is ApproverType.USER:
            return [reference]
        if approver_type is ApproverType.ROLE:
            return sorted(a.id for a in self._actors.values() if reference in a.roles)
        return sorted(a.id for a in self._actors.values() if reference in a.teams)
