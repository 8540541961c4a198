"""Typed errors raised by the approval engine."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator


class ApprovalError(Exception):
    """Base class for all approval engine errors."""

    retryable = False


class NotFound(ApprovalError):
    """No assignment or workflow exists for the requested item."""


class UnauthorizedTransition(ApprovalError):
    """The actor may not act on the assignment's current step."""

    def __init__(self, actor_id: str, step_id: str | None) -> None:
        self.actor_id = actor_id
        self.step_id = step_id
        super().__init__(f"Actor {actor_id} is not an approver for step {step_id}")


class AlreadyTerminal(ApprovalError):
    """The assignment is closed; a new cycle is required before acting again."""

    def __init__(self, content_id: str, status: str) -> None:
        self.content_id = content_id
        self.status = status
        super().__init__(f"Assignment for {content_id} is already {status}")


class ConcurrentModification(ApprovalError):
    """The assignment changed between read and write. Safe to retry."""

    retryable = True

    def __init__(self, assignment_id: str, expected_version: int) -> None:
        self.assignment_id = assignment_id
        self.expected_version = expected_version
        super().__init__(
            f"Assignment {assignment_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


class PersistenceError(ApprovalError):
    """Underlying store failure, tagged with the operation that hit it."""

    def __init__(self, operation: str, cause: BaseException) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation}: {cause}")


class InvalidAction(ApprovalError, ValueError):
    """The requested action is not one of approve/reject/request_changes."""


class InvalidComment(ApprovalError, ValueError):
    """A comment cannot be stored as given."""


class WorkflowDefinitionError(ApprovalError):
    """A workflow definition cannot be used (inactive, no steps, bad ordering)."""


@contextmanager
def wrap_store_errors(operation: str) -> Iterator[None]:
    """Re-raise raw store exceptions as :class:`PersistenceError`.

    Engine errors raised by the store itself (``ConcurrentModification``)
    pass through untouched.
    """
    try:
        yield
    except ApprovalError:
        raise
    except Exception as exc:
        raise PersistenceError(operation, exc) from exc
