from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from attachsync.attachment.models import Attachment
from attachsync.common.time import utcnow
from attachsync.remote.client import UploadCoordinator
from attachsync.upload.errors import InvalidInputError
from attachsync.upload.models import UploadQueueEntry
from attachsync.upload.queue_repo import UploadQueueRepo
from attachsync.upload.types import AttachmentRef, QueueItem

logger = logging.getLogger(__name__)


class AttachmentService:
    def __init__(self, db: Session, *, user_id: str):
        if not user_id:
            raise InvalidInputError("user_id is required")
        self.db = db
        self.user_id = user_id

    def find_by_ref(self, ref: AttachmentRef) -> Attachment | None:
        return (
            self.db.query(Attachment)
            .filter(
                Attachment.user_id == self.user_id,
                Attachment.library_id == ref.library_id,
                Attachment.item_key == ref.item_key,
            )
            .first()
        )

    def enqueue(
        self,
        ref: AttachmentRef,
        content_hash: str,
        *,
        file_path: str | None = None,
        mime_type: str | None = None,
    ) -> QueueItem:
        """Track ``ref`` as pending upload of ``content_hash`` and upsert its queue item."""
        if not content_hash or not content_hash.strip():
            raise InvalidInputError("content_hash must not be empty")

        attachment = self.find_by_ref(ref)
        if attachment is None:
            attachment = Attachment(user_id=self.user_id, library_id=ref.library_id, item_key=ref.item_key)
            self.db.add(attachment)
        attachment.content_hash = content_hash
        attachment.upload_status = "pending"
        if file_path is not None:
            attachment.file_path = file_path
        if mime_type is not None:
            attachment.mime_type = mime_type
        self.db.commit()

        item = UploadQueueRepo(self.db, user_id=self.user_id).upsert(content_hash=content_hash, ref=ref)
        logger.info("attachment enqueued content_hash=%s ref=%s", content_hash, ref)
        return item

    def repair_queue(self) -> int:
        """Re-enqueue pending attachments whose queue item went missing.

        Returns:
            Number of queue items recreated
        """
        orphans = (
            self.db.query(Attachment)
            .outerjoin(
                UploadQueueEntry,
                (UploadQueueEntry.user_id == Attachment.user_id)
                & (UploadQueueEntry.content_hash == Attachment.content_hash),
            )
            .filter(
                Attachment.user_id == self.user_id,
                Attachment.upload_status == "pending",
                Attachment.content_hash.isnot(None),
                UploadQueueEntry.content_hash.is_(None),
            )
            .order_by(Attachment.id.asc())
            .all()
        )
        pairs = [(a.content_hash, AttachmentRef(library_id=a.library_id, item_key=a.item_key)) for a in orphans]
        self.db.commit()

        repo = UploadQueueRepo(self.db, user_id=self.user_id)
        seen: set[str] = set()
        now = utcnow()
        for content_hash, ref in pairs:
            if content_hash in seen:
                continue
            seen.add(content_hash)
            repo.upsert(content_hash=content_hash, ref=ref, now=now)
            logger.warning("queue divergence repaired content_hash=%s ref=%s", content_hash, ref)
        return len(seen)

    def retry_failed_uploads(self, coordinator: UploadCoordinator) -> int:
        """Ask the coordinator to reset failed uploads and requeue what it returns.

        Returns:
            Number of queue items reset
        """
        results = coordinator.reset_failed_uploads()
        items = [
            (r.file_hash, AttachmentRef(library_id=r.library_id, item_key=r.item_key))
            for r in results
            if r.file_hash
        ]
        return UploadQueueRepo(self.db, user_id=self.user_id).reset(items)

    def upload_stats(self) -> dict[str, int]:
        rows = (
            self.db.query(Attachment.upload_status, func.count(Attachment.id))
            .filter(Attachment.user_id == self.user_id, Attachment.upload_status.isnot(None))
            .group_by(Attachment.upload_status)
            .all()
        )
        self.db.commit()
        stats = {"pending": 0, "completed": 0, "failed": 0, "plan_limit": 0}
        for status, count in rows:
            stats[status] = int(count)
        return stats
