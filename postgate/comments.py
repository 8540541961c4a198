"""Threaded review comments on content items."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from .constants import CommentType
from .contracts import ApprovalComment, utcnow
from .exceptions import InvalidComment, NotFound, wrap_store_errors
from .persistence import ApprovalStore

logger = logging.getLogger(__name__)


def _clean_mentions(mentions: Optional[Iterable[str]]) -> Optional[List[str]]:
    cleaned = list(dict.fromkeys(m.strip() for m in mentions or () if m and m.strip()))
    return cleaned or None


class CommentService:
    """Create, list and resolve reviewer comments."""

    def __init__(
        self,
        store: ApprovalStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._clock = clock

    async def get_approval_comments(self, content_id: str) -> List[ApprovalComment]:
        """All comments on ``content_id``, oldest first."""
        with wrap_store_errors("Failed to load comments"):
            return await self._store.comments.list_for_content(content_id)

    async def create_approval_comment(
        self,
        content_id: str,
        user_id: str,
        comment: str,
        comment_type: CommentType | str = CommentType.FEEDBACK,
        parent_comment_id: Optional[str] = None,
        mentions: Optional[Iterable[str]] = None,
        workflow_step_id: Optional[str] = None,
    ) -> ApprovalComment:
        """Store a comment, optionally as a reply to ``parent_comment_id``.

        A root comment starts its own thread. A reply joins the thread of
        its parent, which must belong to the same content item.

        Raises:
            InvalidComment: The text is empty or the type is unknown, or the
                parent belongs to another content item.
            NotFound: ``parent_comment_id`` does not exist.
        """
        text = (comment or "").strip()
        if not text:
            raise InvalidComment("Comment text is required")
        try:
            kind = CommentType(comment_type)
        except ValueError:
            raise InvalidComment(f"Unknown comment type: {comment_type}") from None

        thread_id = None
        if parent_comment_id is not None:
            with wrap_store_errors("Failed to load parent comment"):
                parent = await self._store.comments.get_comment(parent_comment_id)
            if parent is None:
                raise NotFound(f"No comment {parent_comment_id}")
            if parent.content_id != content_id:
                raise InvalidComment(
                    f"Comment {parent_comment_id} belongs to content {parent.content_id}"
                )
            thread_id = parent.thread_id or parent.id

        now = self._clock()
        record = ApprovalComment(
            content_id=content_id,
            user_id=user_id,
            comment=text,
            comment_type=kind,
            parent_comment_id=parent_comment_id,
            thread_id=thread_id,
            mentions=_clean_mentions(mentions),
            workflow_step_id=workflow_step_id,
            created_at=now,
            updated_at=now,
        )
        with wrap_store_errors("Failed to create comment"):
            stored = await self._store.comments.add_comment(record)
        logger.info(
            f"{kind.value} comment {stored.id} by {user_id} on content={content_id} "
            f"thread={stored.thread_id}"
        )
        return stored

    async def resolve_approval_comment(
        self,
        comment_id: str,
        resolver_id: str,
        resolution: Optional[str] = None,
    ) -> ApprovalComment:
        with wrap_store_errors("Failed to resolve comment"):
            resolved = await self._store.comments.resolve_comment(
                comment_id, resolver_id, resolution, self._clock()
            )
        if resolved is None:
            raise NotFound(f"No comment {comment_id}")
        logger.info(f"Comment {comment_id} resolved by {resolver_id}")
        return resolved
