"""Byte transfer of one queue item to its signed upload URL."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

import httpx

from attachsync.host.files import FileAccessor
from attachsync.upload.errors import PermanentUploadError, TransferError
from attachsync.upload.types import QueueItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedFile:
    path: str
    data: bytes
    mime_type: str
    page_count: int | None

    @property
    def size(self) -> int:
        return len(self.data)


class UploadExecutor:
    """Reads an item's bytes and PUTs them to a signed URL.

    Transport errors and 5xx answers are retried in place up to
    ``max_attempts`` times, sleeping ``attempt * backoff_sec`` between tries.
    4xx answers fail immediately with a non-retryable ``TransferError``.
    """

    def __init__(
        self,
        files: FileAccessor,
        *,
        max_attempts: int = 3,
        backoff_sec: float = 2.0,
        timeout_sec: float = 300.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.files = files
        self.max_attempts = max(1, max_attempts)
        self.backoff_sec = backoff_sec
        self.sleep = sleep
        self._client = httpx.Client(timeout=httpx.Timeout(timeout_sec), transport=transport)

    def close(self) -> None:
        self._client.close()

    def prepare(self, item: QueueItem) -> PreparedFile:
        """Resolve and read the file behind ``item``.

        Raises:
            PermanentUploadError: If the path is unknown or the file cannot be read
        """
        path = self.files.resolve_path(item.ref)
        if not path:
            raise PermanentUploadError(f"File path not found for attachment: {item.ref}")

        try:
            data = self.files.read_bytes(path)
        except FileNotFoundError as exc:
            raise PermanentUploadError(f"File not found for attachment {item.ref}: {path}") from exc
        except OSError as exc:
            raise PermanentUploadError(f"Error reading file for attachment {item.ref}: {exc}") from exc

        return PreparedFile(
            path=path,
            data=data,
            mime_type=self.files.mime_type(item.ref),
            page_count=self.files.page_count(item.ref),
        )

    def transfer(self, url: str, prepared: PreparedFile, *, content_hash: str) -> None:
        """PUT the prepared bytes to ``url``.

        Raises:
            TransferError: retryable after exhausting in-place retries, or
                non-retryable on a 4xx answer
        """
        last_error: TransferError | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = self._client.put(
                    url,
                    content=prepared.data,
                    headers={"Content-Type": prepared.mime_type},
                )
            except httpx.TransportError as exc:
                last_error = TransferError(f"Network error: {exc}", retryable=True)
                logger.warning(
                    "transfer network error content_hash=%s attempt=%s error=%s",
                    content_hash,
                    attempt,
                    exc,
                )
            else:
                if resp.status_code < 400:
                    return
                if resp.status_code < 500:
                    raise TransferError(
                        f"Upload failed with status {resp.status_code}",
                        status_code=resp.status_code,
                        retryable=False,
                    )
                last_error = TransferError(
                    f"Upload failed with status {resp.status_code}",
                    status_code=resp.status_code,
                    retryable=True,
                )
                logger.warning(
                    "transfer server error content_hash=%s attempt=%s status=%s",
                    content_hash,
                    attempt,
                    resp.status_code,
                )

            if attempt < self.max_attempts:
                self.sleep(self.backoff_sec * attempt)

        raise TransferError(
            f"Failed to upload after {self.max_attempts} attempts: {last_error}",
            status_code=last_error.status_code if last_error else None,
            retryable=True,
        )

    def run(self, item: QueueItem, url: str) -> PreparedFile:
        prepared = self.prepare(item)
        self.transfer(url, prepared, content_hash=item.content_hash)
        return prepared
