"""File accessor: resolves queue references to bytes on local disk."""
from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import Callable, Protocol

from sqlalchemy.orm import Session

from attachsync.attachment.models import Attachment
from attachsync.upload.types import AttachmentRef

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


class FileAccessor(Protocol):
    def resolve_path(self, ref: AttachmentRef) -> str | None: ...

    def read_bytes(self, path: str) -> bytes: ...

    def page_count(self, ref: AttachmentRef) -> int | None: ...

    def mime_type(self, ref: AttachmentRef) -> str: ...


def count_pdf_pages(path: str) -> int | None:
    from PyPDF2 import PdfReader

    try:
        return len(PdfReader(path).pages)
    except Exception as exc:
        logger.warning("pdf page count failed path=%s error=%s", path, exc)
        return None


class LocalFileAccessor:
    """Reads attachment files from the paths the host recorded on the attachment rows."""

    def __init__(self, session_factory: Callable[[], Session], *, user_id: str) -> None:
        self.session_factory = session_factory
        self.user_id = user_id

    def _lookup(self, ref: AttachmentRef) -> tuple[str | None, str | None]:
        db = self.session_factory()
        try:
            row = (
                db.query(Attachment.file_path, Attachment.mime_type)
                .filter(
                    Attachment.user_id == self.user_id,
                    Attachment.library_id == ref.library_id,
                    Attachment.item_key == ref.item_key,
                )
                .first()
            )
            db.commit()
        finally:
            db.close()
        if row is None:
            return None, None
        return row.file_path, row.mime_type

    def resolve_path(self, ref: AttachmentRef) -> str | None:
        file_path, _ = self._lookup(ref)
        return file_path or None

    def read_bytes(self, path: str) -> bytes:
        return Path(path).read_bytes()

    def mime_type(self, ref: AttachmentRef) -> str:
        file_path, stored = self._lookup(ref)
        guessed = mimetypes.guess_type(file_path)[0] if file_path else None
        return guessed or stored or DEFAULT_MIME_TYPE

    def page_count(self, ref: AttachmentRef) -> int | None:
        file_path, _ = self._lookup(ref)
        if not file_path or self.mime_type(ref) != "application/pdf":
            return None
        return count_pdf_pages(file_path)
