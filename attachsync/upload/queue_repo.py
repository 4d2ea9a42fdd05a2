"""Upload queue repository for upsert/claim/complete/fail/extend/reset operations."""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_
from sqlalchemy.orm import Session

from attachsync.attachment.models import Attachment
from attachsync.common.time import as_utc, utcnow
from attachsync.upload.errors import InvalidInputError
from attachsync.upload.models import UploadQueueEntry
from attachsync.upload.types import TERMINAL_UPLOAD_STATUSES, AttachmentRef, QueueItem, UploadStatus

logger = logging.getLogger(__name__)

_UNSET = object()

_FAIL_STATUSES = TERMINAL_UPLOAD_STATUSES - {"completed"}


@dataclass(frozen=True)
class ClaimResult:
    """Result of claiming queue items."""

    claimed: list[QueueItem]


def compute_backoff(
    attempts: int,
    base_sec: float = 1.0,
    cap_sec: float = 60.0,
) -> timedelta:
    """Compute exponential backoff.

    Args:
        attempts: Consecutive failures so far (1 for the first failure)
        base_sec: Delay after the first failure
        cap_sec: Maximum delay cap in seconds

    Returns:
        timedelta to wait before the next attempt
    """
    delay = min(cap_sec, base_sec * (2 ** min(max(attempts, 1) - 1, 10)))
    return timedelta(seconds=delay)


def _to_item(row: UploadQueueEntry) -> QueueItem:
    return QueueItem(
        user_id=row.user_id,
        content_hash=row.content_hash,
        ref=AttachmentRef(library_id=row.library_id, item_key=row.item_key),
        visibility=as_utc(row.visibility),
        attempt_count=row.attempt_count or 0,
    )


class UploadQueueRepo:
    """Repository for the per-user upload queue.

    Every public method runs in (and commits) its own transaction on the
    session it was given. Rows are handed out as detached ``QueueItem``
    snapshots so callers never hold live ORM state across threads.
    """

    def __init__(self, db: Session, *, user_id: str) -> None:
        if not user_id:
            raise InvalidInputError("user_id is required")
        self.db = db
        self.user_id = user_id

    def _query(self):
        return self.db.query(UploadQueueEntry).filter(UploadQueueEntry.user_id == self.user_id)

    def get(self, content_hash: str) -> QueueItem | None:
        row = self._query().filter(UploadQueueEntry.content_hash == content_hash).first()
        item = _to_item(row) if row else None
        self.db.commit()
        return item

    def count(self) -> int:
        total = self._query().count()
        self.db.commit()
        return total

    def upsert(
        self,
        *,
        content_hash: str,
        ref: AttachmentRef,
        visibility: datetime | None | object = _UNSET,
        attempt_count: int | object = _UNSET,
        now: datetime | None = None,
    ) -> QueueItem:
        """Insert a queue item or refresh its reference.

        A new row starts visible now with zero attempts unless the caller
        supplies ``visibility``/``attempt_count``. An existing row only gets
        its reference updated; visibility and attempts change only when the
        caller passes them explicitly (administrative reset).

        Raises:
            InvalidInputError: If ``content_hash`` is empty
        """
        if not content_hash or not content_hash.strip():
            raise InvalidInputError("content_hash must not be empty")

        row = self._query().filter(UploadQueueEntry.content_hash == content_hash).first()
        if row is None:
            row = UploadQueueEntry(
                user_id=self.user_id,
                content_hash=content_hash,
                visibility=(now or utcnow()) if visibility is _UNSET else visibility,
                attempt_count=0 if attempt_count is _UNSET else attempt_count,
                library_id=ref.library_id,
                item_key=ref.item_key,
            )
            self.db.add(row)
            created = True
        else:
            row.library_id = ref.library_id
            row.item_key = ref.item_key
            if visibility is not _UNSET:
                row.visibility = visibility
            if attempt_count is not _UNSET:
                row.attempt_count = attempt_count
            created = False

        self.db.flush()
        item = _to_item(row)
        self.db.commit()

        logger.debug(
            "queue upsert",
            extra={"content_hash": content_hash, "ref": str(ref), "created": created},
        )
        return item

    def claim(
        self,
        *,
        now: datetime,
        limit: int,
        max_attempts: int,
        visibility_timeout_min: int,
    ) -> ClaimResult:
        """Claim up to ``limit`` visible items for processing.

        Selects items whose visibility is NULL or already past and whose
        attempts are below ``max_attempts``, fewest attempts first with the
        content hash as tie-break. Each claimed item is hidden until
        ``now + visibility_timeout_min`` and its attempt counter is bumped,
        in the same transaction as the select.

        Returns:
            ClaimResult containing snapshots of the claimed items
        """
        if limit <= 0:
            return ClaimResult(claimed=[])

        query = (
            self._query()
            .filter(
                UploadQueueEntry.attempt_count < max_attempts,
                or_(
                    UploadQueueEntry.visibility.is_(None),
                    UploadQueueEntry.visibility <= now,
                ),
            )
            .order_by(
                UploadQueueEntry.attempt_count.asc(),
                UploadQueueEntry.content_hash.asc(),
            )
            .with_for_update(skip_locked=True)
            .limit(limit)
        )

        rows = query.all()
        hidden_until = now + timedelta(minutes=visibility_timeout_min)
        for row in rows:
            row.visibility = hidden_until
            row.attempt_count = (row.attempt_count or 0) + 1

        self.db.flush()
        claimed = [_to_item(row) for row in rows]
        self.db.commit()

        if claimed:
            logger.info(
                "queue claim user_id=%s count=%s visible_at=%s",
                self.user_id,
                len(claimed),
                hidden_until.isoformat(),
            )
        return ClaimResult(claimed=claimed)

    def complete(self, *, content_hash: str) -> bool:
        """Delete the queue item and mark its attachments completed.

        Must only run after the remote side has accepted the completion.

        Returns:
            True if a queue row was removed, False if it was already gone
        """
        return self._finish(content_hash=content_hash, status="completed")

    def fail(self, *, content_hash: str, status: UploadStatus = "failed") -> bool:
        """Delete the queue item and set its attachments to a terminal failure status.

        Must only run after the remote side has recorded the failure.

        Returns:
            True if a queue row was removed, False if it was already gone
        """
        if status not in _FAIL_STATUSES:
            raise InvalidInputError(f"not a terminal failure status: {status}")
        return self._finish(content_hash=content_hash, status=status)

    def _finish(self, *, content_hash: str, status: UploadStatus) -> bool:
        deleted = (
            self._query()
            .filter(UploadQueueEntry.content_hash == content_hash)
            .delete(synchronize_session=False)
        )
        (
            self.db.query(Attachment)
            .filter(Attachment.user_id == self.user_id, Attachment.content_hash == content_hash)
            .update({Attachment.upload_status: status, Attachment.updated_at: utcnow()}, synchronize_session=False)
        )
        self.db.commit()

        if not deleted:
            logger.warning(
                "queue finish without queue row (duplicate completion?)",
                extra={"content_hash": content_hash, "status": status},
            )
        return bool(deleted)

    def extend_visibility(self, *, content_hash: str, minutes: int, now: datetime | None = None) -> bool:
        """Push an item out of claimability without deleting it.

        Returns:
            True if the item was updated, False if it no longer exists
        """
        row = self._query().filter(UploadQueueEntry.content_hash == content_hash).first()
        if row is None:
            self.db.commit()
            logger.warning("extend_visibility failed: item not found", extra={"content_hash": content_hash})
            return False

        row.visibility = (now or utcnow()) + timedelta(minutes=minutes)
        self.db.commit()
        return True

    def release(self, *, content_hash: str, delay_min: int = 0, now: datetime | None = None) -> bool:
        """Hand a claimed item back to the queue without consuming the attempt.

        The claim's attempt is refunded and the item becomes visible again
        after ``delay_min`` minutes.

        Returns:
            True if the item was updated, False if it no longer exists
        """
        row = self._query().filter(UploadQueueEntry.content_hash == content_hash).first()
        if row is None:
            self.db.commit()
            logger.warning("release failed: item not found", extra={"content_hash": content_hash})
            return False

        row.attempt_count = max(0, row.attempt_count - 1)
        row.visibility = (now or utcnow()) + timedelta(minutes=delay_min)
        self.db.commit()
        return True

    def reset(self, items: Iterable[tuple[str, AttachmentRef]]) -> int:
        """Re-insert items as fresh work (visible now, zero attempts) and flip them to pending.

        Returns:
            Number of items reset
        """
        count = 0
        for content_hash, ref in items:
            if not content_hash:
                continue
            row = self._query().filter(UploadQueueEntry.content_hash == content_hash).first()
            if row is None:
                row = UploadQueueEntry(user_id=self.user_id, content_hash=content_hash)
                self.db.add(row)
            row.library_id = ref.library_id
            row.item_key = ref.item_key
            row.visibility = None
            row.attempt_count = 0
            self.db.flush()

            (
                self.db.query(Attachment)
                .filter(Attachment.user_id == self.user_id, Attachment.content_hash == content_hash)
                .update({Attachment.upload_status: "pending"}, synchronize_session=False)
            )
            count += 1

        self.db.commit()
        logger.info("queue reset user_id=%s count=%s", self.user_id, count)
        return count

    def list_exhausted(self, *, now: datetime, max_attempts: int) -> list[QueueItem]:
        """Items that ran out of attempts and are no longer claimed by anyone."""
        rows = (
            self._query()
            .filter(
                UploadQueueEntry.attempt_count >= max_attempts,
                or_(
                    UploadQueueEntry.visibility.is_(None),
                    UploadQueueEntry.visibility <= now,
                ),
            )
            .order_by(UploadQueueEntry.content_hash.asc())
            .all()
        )
        items = [_to_item(row) for row in rows]
        self.db.commit()
        return items
