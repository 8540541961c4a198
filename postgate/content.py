"""Content gateway: the host application's view of items awaiting approval."""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, Field

from .constants import AssignmentStatus, WorkflowScope
from .contracts import Workflow


class ContentRecord(BaseModel):
    """Attributes of a content item used for workflow scope matching."""

    id: str
    owner_id: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    approval_status: Optional[AssignmentStatus] = None


class ContentGateway(Protocol):
    """Read content attributes and mirror the approval status back."""

    async def get_content(self, content_id: str) -> Optional[ContentRecord]:
        """Return the content record or ``None`` when unknown."""

    async def mirror_status(self, content_id: str, status: AssignmentStatus) -> None:
        """Write the denormalized approval status onto the content record."""

    async def apply_snapshot(self, content_id: str, fields: Dict[str, Any]) -> None:
        """Overwrite the given editable fields of the content item."""


def matches_scope(workflow: Workflow, content: Optional[ContentRecord]) -> bool:
    """Return ``True`` when ``workflow`` applies to ``content``.

    Global workflows always match. Scoped workflows need every filter to be
    satisfied by the content's attributes; a list filter matches any member.
    """
    if workflow.scope is WorkflowScope.GLOBAL:
        return True
    if content is None or not workflow.scope_filters:
        return False
    for key, allowed in workflow.scope_filters.items():
        value = content.attributes.get(key)
        if value is None:
            return False
        if isinstance(allowed, (list, tuple, set)):
            if value not in allowed:
                return False
        elif value != allowed:
            return False
    return True


class InMemoryContentGateway:
    """Dictionary-backed content store."""

    def __init__(self) -> None:
        self._items: Dict[str, ContentRecord] = {}

    def add(self, record: ContentRecord) -> None:
        self._items[record.id] = record

    async def get_content(self, content_id: str) -> Optional[ContentRecord]:
        return self._items.get(content_id)

    async def mirror_status(self, content_id: str, status: AssignmentStatus) -> None:
        record = self._items.get(content_id)
        if record:
            record.approval_status = status

    async def apply_snapshot(self, content_id: str, fields: Dict[str, Any]) -> None:
        record = self._items.get(content_id)
        if record:
            record.attributes.update(fields)
