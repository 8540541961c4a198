"""Facade wiring the assignment manager, transition engine and query service."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from .actors import ActorDirectory
from .assignments import AssignmentManager
from .comments import CommentService
from .config import PostgateConfig, load_config
from .content import ContentGateway
from .contracts import utcnow
from .engine import StepTransitionEngine
from .events import TransitionNotifier
from .persistence import ApprovalStore, get_store
from .queries import ApprovalQueryService
from .revisions import RevisionService


class ApprovalService:
    """Single entry point exposing every approval operation.

    The underlying services are reachable as ``assignments``, ``engine``,
    ``queries``, ``comments`` and ``revisions``; the common operations are
    re-exported as methods.
    """

    def __init__(
        self,
        store: ApprovalStore,
        directory: ActorDirectory,
        notifier: Optional[TransitionNotifier] = None,
        content: Optional[ContentGateway] = None,
        config: Optional[PostgateConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or PostgateConfig()
        self.store = store
        self.assignments = AssignmentManager(store, content=content, clock=clock)
        self.engine = StepTransitionEngine(
            store,
            directory,
            notifier=notifier,
            content=content,
            config=self.config.engine,
            clock=clock,
        )
        self.queries = ApprovalQueryService(store, directory, clock=clock)
        self.comments = CommentService(store, clock=clock)
        self.revisions = RevisionService(store, content=content, clock=clock)

        self.ensure_workflow_assignment = self.assignments.ensure_workflow_assignment
        self.advance_workflow_step = self.engine.advance_workflow_step
        self.advance_with_retry = self.engine.advance_with_retry
        self.bulk_advance_workflow = self.engine.bulk_advance_workflow
        self.get_pending_approvals = self.queries.get_pending_approvals
        self.get_approval_dashboard = self.queries.get_approval_dashboard
        self.get_approval_stats = self.queries.get_approval_stats
        self.get_overdue_assignments = self.queries.get_overdue_assignments
        self.get_assignment_history = self.queries.get_assignment_history
        self.get_approval_comments = self.comments.get_approval_comments
        self.create_approval_comment = self.comments.create_approval_comment
        self.resolve_approval_comment = self.comments.resolve_approval_comment
        self.record_revision = self.revisions.record_revision
        self.list_revisions = self.revisions.list_revisions
        self.restore_revision = self.revisions.restore_revision

    @classmethod
    def from_config(
        cls,
        directory: ActorDirectory,
        notifier: Optional[TransitionNotifier] = None,
        content: Optional[ContentGateway] = None,
        config: Optional[PostgateConfig] = None,
    ) -> "ApprovalService":
        config = config or load_config()
        return cls(
            get_store(config=config),
            directory,
            notifier=notifier,
            content=content,
            config=config,
        )
