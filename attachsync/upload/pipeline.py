"""Per-item upload decisions: transfer, then complete, reschedule or fail."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from attachsync.common.time import utcnow
from attachsync.upload.errors import PermanentUploadError, TransferError
from attachsync.upload.executor import UploadExecutor
from attachsync.upload.protocol import UploadStateProtocol
from attachsync.upload.queue_repo import UploadQueueRepo
from attachsync.upload.types import ItemOutcome, QueueItem

logger = logging.getLogger(__name__)


class UploadPipeline:
    """Runs one claimed item to an ``ItemOutcome``.

    Transient transfer failures reschedule the item by extending its
    visibility while attempts remain; the last allowed attempt turns them
    into a permanent failure. Errors from the remote completion call
    propagate so the item stays claimed and is retried after its
    visibility timeout.
    """

    def __init__(
        self,
        *,
        executor: UploadExecutor,
        protocol: UploadStateProtocol,
        session_factory: Callable[[], Session],
        user_id: str,
        max_attempts: int,
        retry_delay_min: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.executor = executor
        self.protocol = protocol
        self.session_factory = session_factory
        self.user_id = user_id
        self.max_attempts = max_attempts
        self.retry_delay_min = retry_delay_min
        self.clock = clock

    def process(self, item: QueueItem, url: str | None) -> ItemOutcome:
        if not url:
            self._release(item)
            logger.info(
                "upload could not start: no upload url content_hash=%s delay_min=%s",
                item.content_hash,
                self.retry_delay_min,
            )
            return ItemOutcome(content_hash=item.content_hash, kind="skipped", detail="no upload url")

        try:
            prepared = self.executor.run(item, url)
        except PermanentUploadError as exc:
            return self._fail_permanently(item, str(exc))
        except TransferError as exc:
            if not exc.retryable:
                return self._fail_permanently(item, str(exc))
            return self._retry_later(item, str(exc))

        return self.protocol.mark_completed(
            item,
            mime_type=prepared.mime_type,
            size=prepared.size,
            page_count=prepared.page_count,
        )

    def _release(self, item: QueueItem) -> None:
        # An item that never started must not use up its attempts.
        db = self.session_factory()
        try:
            UploadQueueRepo(db, user_id=self.user_id).release(
                content_hash=item.content_hash,
                delay_min=self.retry_delay_min,
                now=self.clock(),
            )
        finally:
            db.close()

    def _retry_later(self, item: QueueItem, reason: str) -> ItemOutcome:
        if item.attempt_count >= self.max_attempts:
            return self._fail_permanently(item, f"Max attempts reached: {reason}")

        db = self.session_factory()
        try:
            repo = UploadQueueRepo(db, user_id=self.user_id)
            repo.extend_visibility(
                content_hash=item.content_hash,
                minutes=self.retry_delay_min,
                now=self.clock(),
            )
        finally:
            db.close()

        logger.info(
            "upload retry scheduled content_hash=%s attempts=%s delay_min=%s error=%s",
            item.content_hash,
            item.attempt_count,
            self.retry_delay_min,
            (reason or "")[:200],
        )
        return ItemOutcome(content_hash=item.content_hash, kind="skipped", detail=reason)

    def _fail_permanently(self, item: QueueItem, reason: str) -> ItemOutcome:
        try:
            return self.protocol.mark_failed(item, reason=reason)
        except Exception as exc:
            # Local row stays claimed; it is reclaimed after the visibility timeout.
            logger.warning(
                "could not record permanent failure, will retry later content_hash=%s attempts=%s error=%s",
                item.content_hash,
                item.attempt_count,
                exc,
            )
            return ItemOutcome(content_hash=item.content_hash, kind="skipped", detail=str(exc))
