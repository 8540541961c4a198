"""Postgate: multi-step approval workflows for content items."""

from .actors import Actor, StaticActorDirectory
from .assignments import AssignmentManager
from .comments import CommentService
from .constants import (
    ApprovalAction,
    ApproverType,
    AssignmentStatus,
    CommentType,
    WorkflowScope,
)
from .content import ContentRecord, InMemoryContentGateway
from .contracts import (
    ActionDetails,
    ApprovalComment,
    ApprovalHistoryEntry,
    ApprovalStats,
    Assignment,
    BulkResult,
    DashboardRow,
    Revision,
    TransitionEvent,
    Workflow,
    WorkflowStep,
)
from .engine import StepTransitionEngine
from .events import NullNotifier, TransportNotifier
from .exceptions import (
    AlreadyTerminal,
    ApprovalError,
    ConcurrentModification,
    InvalidAction,
    InvalidComment,
    NotFound,
    PersistenceError,
    UnauthorizedTransition,
    WorkflowDefinitionError,
)
from .persistence import get_store
from .queries import ApprovalQueryService
from .revisions import RevisionService
from .service import ApprovalService
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ActionDetails",
    "Actor",
    "ApprovalComment",
    "AlreadyTerminal",
    "ApprovalAction",
    "ApprovalError",
    "ApprovalHistoryEntry",
    "ApprovalQueryService",
    "ApprovalService",
    "ApprovalStats",
    "ApproverType",
    "Assignment",
    "AssignmentManager",
    "AssignmentStatus",
    "BulkResult",
    "CommentService",
    "CommentType",
    "ConcurrentModification",
    "ContentRecord",
    "DashboardRow",
    "InMemoryContentGateway",
    "InvalidAction",
    "InvalidComment",
    "NotFound",
    "NullNotifier",
    "PersistenceError",
    "Revision",
    "RevisionService",
    "StaticActorDirectory",
    "StepTransitionEngine",
    "TransitionEvent",
    "TransportNotifier",
    "UnauthorizedTransition",
    "Workflow",
    "WorkflowDefinitionError",
    "WorkflowScope",
    "WorkflowStep",
    "get_store",
    "get_transport",
]
