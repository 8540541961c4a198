"""Numbered content snapshots and restoring an older one."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .constants import RESTORABLE_FIELDS, RESTORED_REVISION_REASON
from .content import ContentGateway
from .contracts import Revision, utcnow
from .exceptions import NotFound, wrap_store_errors
from .persistence import ApprovalStore

logger = logging.getLogger(__name__)


class RevisionService:
    def __init__(
        self,
        store: ApprovalStore,
        content: Optional[ContentGateway] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._content = content
        self._clock = clock

    async def record_revision(
        self,
        content_id: str,
        author_id: str,
        snapshot: Dict[str, Any],
        diff: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> Revision:
        """Append ``snapshot`` as the content item's next numbered revision."""
        revision = Revision(
            content_id=content_id,
            author_id=author_id,
            snapshot=snapshot,
            diff=diff,
            created_reason=reason,
            created_at=self._clock(),
        )
        with wrap_store_errors("Failed to record revision"):
            stored = await self._store.revisions.append_revision(revision)
        logger.info(
            f"Recorded revision #{stored.revision_number} of content={content_id} "
            f"by {author_id}"
        )
        return stored

    async def list_revisions(self, content_id: str) -> List[Revision]:
        with wrap_store_errors("Failed to list revisions"):
            return await self._store.revisions.list_for_content(content_id)

    async def restore_revision(
        self, content_id: str, revision_id: str, actor_id: str
    ) -> Revision:
        """Put an older snapshot back on the content item.

        The snapshot's non-empty editable fields are written through the
        content gateway, then the restore is recorded as a new revision whose
        diff names the source. Returns that new revision.

        Raises:
            NotFound: No such revision for ``content_id``.
        """
        with wrap_store_errors("Failed to load revision"):
            source = await self._store.revisions.get_revision(content_id, revision_id)
        if source is None:
            raise NotFound(f"No revision {revision_id} for content {content_id}")

        fields = {
            key: source.snapshot[key] for key in RESTORABLE_FIELDS if source.snapshot.get(key)
        }
        if fields and self._content is not None:
            with wrap_store_errors("Failed to restore content"):
                await self._content.apply_snapshot(content_id, fields)
        elif fields:
            logger.warning(
                f"No content gateway configured; revision {revision_id} recorded "
                f"without updating content={content_id}"
            )

        return await self.record_revision(
            content_id,
            actor_id,
            source.snapshot,
            diff={"restored_from": revision_id},
            reason=RESTORED_REVISION_REASON,
        )
