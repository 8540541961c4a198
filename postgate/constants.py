"""Shared enumerations and defaults for the approval engine."""

from __future__ import annotations

from enum import Enum


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"

    @property
    def is_terminal(self) -> bool:
        return self is not AssignmentStatus.PENDING


class ApprovalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request_changes"


class ApproverType(str, Enum):
    USER = "user"
    ROLE = "role"
    TEAM = "team"


class WorkflowScope(str, Enum):
    GLOBAL = "global"
    TEAM = "team"
    DEPARTMENT = "department"
    CONTENT_TYPE = "content_type"


class CommentType(str, Enum):
    FEEDBACK = "feedback"
    APPROVAL = "approval"
    REJECTION = "rejection"
    REVISION_REQUEST = "revision_request"


# Transition record kind written when a changes-requested item is resubmitted.
RESUBMIT_ACTION = "resubmit"

TERMINAL_STATUSES = frozenset(
    {
        AssignmentStatus.APPROVED,
        AssignmentStatus.REJECTED,
        AssignmentStatus.CHANGES_REQUESTED,
    }
)

DEFAULT_TRANSITION_TOPIC = "approval.transitions"
DEFAULT_MAX_RETRIES = 3
DEFAULT_NOTIFY_TIMEOUT = 5.0

# Revision reason recorded when an older snapshot is put back on the content.
RESTORED_REVISION_REASON = "restored_version"
# Snapshot fields written back onto the content item by a restore.
RESTORABLE_FIELDS = ("content", "media_urls", "scheduled_at")
