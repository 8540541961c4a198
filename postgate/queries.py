"""Read-side projections over approval state."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Callable, List, Optional

from .actors import ActorDirectory
from .constants import AssignmentStatus
from .contracts import (
    ApprovalHistoryEntry,
    ApprovalStats,
    Assignment,
    DashboardRow,
    utcnow,
)
from .exceptions import NotFound, wrap_store_errors
from .persistence import ApprovalStore

logger = logging.getLogger(__name__)


class ApprovalQueryService:
    """Pending approvals, dashboard rows and stats. Never writes."""

    def __init__(
        self,
        store: ApprovalStore,
        directory: ActorDirectory,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._directory = directory
        self._clock = clock

    async def _step_ids_for(self, actor_id: str) -> List[str]:
        with wrap_store_errors("Failed to resolve actor steps"):
            actor = await self._directory.get_actor(actor_id)
            return await self._store.workflows.find_step_ids_for_actor(actor)

    async def get_pending_approvals(self, actor_id: str) -> List[Assignment]:
        """Pending assignments whose current step ``actor_id`` may act on."""
        step_ids = await self._step_ids_for(actor_id)
        if not step_ids:
            return []
        with wrap_store_errors("Failed to load pending approvals"):
            return await self._store.assignments.list_by_steps(
                step_ids, [AssignmentStatus.PENDING]
            )

    async def get_approval_dashboard(self, actor_id: str) -> List[DashboardRow]:
        """Dashboard rows limited to the steps ``actor_id`` is an approver of.

        An actor without any step gets an empty list and the dashboard
        projection is not queried at all.
        """
        step_ids = await self._step_ids_for(actor_id)
        if not step_ids:
            logger.debug(f"Actor {actor_id} has no approval steps; empty dashboard")
            return []
        with wrap_store_errors("Failed to load approval dashboard"):
            return await self._store.assignments.query_dashboard(step_ids)

    async def get_approval_stats(self, owner_id: str) -> ApprovalStats:
        with wrap_store_errors("Failed to load approval stats"):
            assignments = await self._store.assignments.list_for_owner(owner_id)

        by_status = Counter(a.status for a in assignments)
        pending_by_step = Counter(
            a.current_step_id
            for a in assignments
            if a.status is AssignmentStatus.PENDING and a.current_step_id
        )
        durations = [
            (a.updated_at - a.created_at).total_seconds() / 3600
            for a in assignments
            if a.status is AssignmentStatus.APPROVED
        ]
        return ApprovalStats(
            owner_id=owner_id,
            total=len(assignments),
            pending=by_status[AssignmentStatus.PENDING],
            approved=by_status[AssignmentStatus.APPROVED],
            rejected=by_status[AssignmentStatus.REJECTED],
            changes_requested=by_status[AssignmentStatus.CHANGES_REQUESTED],
            pending_by_step=dict(pending_by_step),
            avg_approval_hours=round(sum(durations) / len(durations), 2)
            if durations
            else None,
        )

    async def get_overdue_assignments(
        self, now: Optional[datetime] = None
    ) -> List[Assignment]:
        with wrap_store_errors("Failed to load overdue assignments"):
            return await self._store.assignments.list_overdue(now or self._clock())

    async def get_assignment_history(self, content_id: str) -> List[ApprovalHistoryEntry]:
        with wrap_store_errors("Failed to load assignment"):
            assignment = await self._store.assignments.get_by_content(content_id)
        if assignment is None:
            raise NotFound(f"No approval assignment for content {content_id}")
        with wrap_store_errors("Failed to load approval history"):
            return await self._store.history.list_for_assignment(assignment.id)
