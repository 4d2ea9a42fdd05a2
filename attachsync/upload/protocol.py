"""Remote-first state transitions for finished queue items.

The coordinator's record of an outcome is authoritative. Local rows are only
deleted after the remote call returned; if it raises, the local row stays
claimed and becomes reclaimable once its visibility lapses. A crash between
the two steps repeats the remote call on the next attempt, which the
coordinator treats as a duplicate.
"""
from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy.orm import Session

from attachsync.remote.client import UploadCoordinator
from attachsync.upload.queue_repo import UploadQueueRepo
from attachsync.upload.types import ItemOutcome, QueueItem
from attachsync.upload.url_cache import UploadUrlCache

logger = logging.getLogger(__name__)


class UploadStateProtocol:
    def __init__(
        self,
        coordinator: UploadCoordinator,
        *,
        session_factory: Callable[[], Session],
        user_id: str,
        url_cache: UploadUrlCache | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.session_factory = session_factory
        self.user_id = user_id
        self.url_cache = url_cache

    def _local(self, fn: Callable[[UploadQueueRepo], bool]) -> bool:
        db = self.session_factory()
        try:
            return fn(UploadQueueRepo(db, user_id=self.user_id))
        finally:
            db.close()

    def mark_completed(
        self,
        item: QueueItem,
        *,
        mime_type: str,
        size: int,
        page_count: int | None,
    ) -> ItemOutcome:
        """Record a successful transfer remotely, then locally.

        Raises:
            Exception: whatever the coordinator raised; local state is untouched
        """
        result = self.coordinator.mark_completed(item.content_hash, mime_type, size, page_count)

        if result.plan_limit_reached:
            self._local(lambda repo: repo.fail(content_hash=item.content_hash, status="plan_limit"))
            self._evict(item)
            logger.warning(
                "upload over plan limit content_hash=%s ref=%s required_pages=%s remaining_pages=%s",
                item.content_hash,
                item.ref,
                result.required_pages,
                result.remaining_pages,
            )
            return ItemOutcome(content_hash=item.content_hash, kind="plan_limit", detail=result.error)

        self._local(lambda repo: repo.complete(content_hash=item.content_hash))
        self._evict(item)
        logger.info(
            "upload completed content_hash=%s ref=%s attempts=%s page_count=%s",
            item.content_hash,
            item.ref,
            item.attempt_count,
            page_count,
        )
        return ItemOutcome(content_hash=item.content_hash, kind="completed")

    def mark_failed(self, item: QueueItem, *, reason: str) -> ItemOutcome:
        """Record a permanent failure remotely, then locally.

        Raises:
            Exception: whatever the coordinator raised; local state is untouched
        """
        logger.warning(
            "permanent upload failure content_hash=%s ref=%s attempts=%s reason=%s",
            item.content_hash,
            item.ref,
            item.attempt_count,
            (reason or "")[:200],
        )
        self.coordinator.mark_failed(item.content_hash)
        self._local(lambda repo: repo.fail(content_hash=item.content_hash, status="failed"))
        self._evict(item)
        return ItemOutcome(content_hash=item.content_hash, kind="failed", detail=reason)

    def _evict(self, item: QueueItem) -> None:
        if self.url_cache is not None:
            self.url_cache.evict(item.content_hash)
