from __future__ import annotations

from sqlalchemy import Column, Index, Integer, String, UniqueConstraint

from attachsync.common.models import TimestampMixin
from attachsync.database import Base


class Attachment(TimestampMixin, Base):
    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    library_id = Column(Integer, nullable=False)
    item_key = Column(String(32), nullable=False)

    # Set once the file has been hashed and queued
    content_hash = Column(String(128), nullable=True)
    upload_status = Column(String(20), nullable=True)

    # Host-provided hints for the local file accessor
    file_path = Column(String(1024), nullable=True)
    mime_type = Column(String(128), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "library_id", "item_key", name="uq_attachments_user_ref"),
        Index("idx_attachments_user_hash", "user_id", "content_hash"),
        Index("idx_attachments_user_status", "user_id", "upload_status"),
    )
