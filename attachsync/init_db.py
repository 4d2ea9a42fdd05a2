"""
Database initialization
Creates the attachment and upload queue tables if they do not exist yet
"""
from __future__ import annotations

import logging

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from attachsync.database import Base

# Import all models so they are registered on Base.metadata
from attachsync.attachment.models import Attachment  # noqa: F401
from attachsync.upload.models import UploadQueueEntry  # noqa: F401

logger = logging.getLogger(__name__)


def init_db(engine: Engine) -> None:
    existing = set(inspect(engine).get_table_names())
    Base.metadata.create_all(engine)
    created = sorted(set(Base.metadata.tables) - existing)
    if created:
        logger.info("created tables: %s", ", ".join(created))


if __name__ == "__main__":
    from attachsync.database import engine

    logging.basicConfig(level=logging.INFO)
    init_db(engine)
