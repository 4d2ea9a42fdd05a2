from __future__ import annotations

from sqlalchemy import Column, DateTime, Index, Integer, String

from attachsync.common.models import TimestampMixin
from attachsync.database import Base


class UploadQueueEntry(TimestampMixin, Base):
    __tablename__ = "upload_queue"

    user_id = Column(String(64), primary_key=True)
    content_hash = Column(String(128), primary_key=True)

    # Claimable only while NULL or in the past
    visibility = Column(DateTime(timezone=True), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)

    library_id = Column(Integer, nullable=False)
    item_key = Column(String(32), nullable=False)

    __table_args__ = (
        Index("idx_upload_queue_claim", "user_id", "attempt_count", "visibility"),
    )
