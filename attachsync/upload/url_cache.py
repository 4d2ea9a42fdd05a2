"""TTL-bound cache of signed upload URLs keyed by content hash."""
from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Callable

from attachsync.common.time import utcnow
from attachsync.remote.client import UploadCoordinator
from attachsync.upload.errors import RemoteApiError
from attachsync.upload.types import UploadCredential

logger = logging.getLogger(__name__)


class UploadUrlCache:
    """Memoizes write credentials fetched in batches from the coordinator.

    A credential counts as valid only while ``now < expires_at - safety_buffer``
    so a transfer never starts on a URL that may expire mid-flight. Readers
    see an immutable dict; writers swap in a new copy under a lock, so
    workers never observe a partially applied batch.
    """

    def __init__(
        self,
        coordinator: UploadCoordinator,
        *,
        ttl: timedelta = timedelta(minutes=90),
        safety_buffer: timedelta = timedelta(minutes=30),
        batch_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.coordinator = coordinator
        self.ttl = ttl
        self.safety_buffer = safety_buffer
        self.batch_size = max(1, batch_size)
        self.clock = clock
        self._entries: dict[str, UploadCredential] = {}
        self._write_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _is_valid(self, credential: UploadCredential, now: datetime) -> bool:
        return now < credential.expires_at - self.safety_buffer

    def get(self, content_hash: str) -> str | None:
        """Return a usable URL for ``content_hash``, fetching one if needed.

        Returns None when the coordinator answered without a URL for the
        hash; the caller treats the item as "could not start" for this cycle.
        """
        return self.get_batch([content_hash]).get(content_hash)

    def get_batch(self, content_hashes: Iterable[str]) -> dict[str, str]:
        """Return usable URLs for every hash that has or can get one.

        Valid cached entries are served as-is; stale ones are evicted and
        refetched together with the misses, ``batch_size`` hashes per
        coordinator request. A hash the coordinator answers without a URL is
        left out of the result.

        Raises:
            RemoteApiError: if a coordinator request fails
        """
        now = self.clock()
        entries = self._entries
        found: dict[str, str] = {}
        stale: list[str] = []
        missing: list[str] = []

        for content_hash in dict.fromkeys(h for h in content_hashes if h):
            cached = entries.get(content_hash)
            if cached is not None and self._is_valid(cached, now):
                found[content_hash] = cached.url
                continue
            if cached is not None:
                stale.append(content_hash)
            missing.append(content_hash)

        if stale:
            self.evict(*stale)

        for start in range(0, len(missing), self.batch_size):
            chunk = missing[start : start + self.batch_size]
            found.update(self._fetch(chunk))

        return found

    def _fetch(self, content_hashes: list[str]) -> dict[str, str]:
        try:
            urls = self.coordinator.get_upload_urls(content_hashes)
        except RemoteApiError as exc:
            logger.warning(
                "upload url batch fetch failed count=%s error=%s",
                len(content_hashes),
                exc,
            )
            raise
        except Exception as exc:
            logger.warning(
                "upload url batch fetch failed count=%s error=%s",
                len(content_hashes),
                exc,
            )
            raise RemoteApiError(f"upload-urls: {exc}") from exc

        expires_at = self.clock() + self.ttl
        fetched = {h: urls[h] for h in content_hashes if urls.get(h)}
        for content_hash in content_hashes:
            if content_hash not in fetched:
                logger.warning("no upload url issued", extra={"content_hash": content_hash})

        if fetched:
            with self._write_lock:
                updated = dict(self._entries)
                for content_hash, url in fetched.items():
                    updated[content_hash] = UploadCredential(url=url, expires_at=expires_at)
                self._entries = updated
        return fetched

    def evict(self, *content_hashes: str) -> None:
        with self._write_lock:
            if not any(h in self._entries for h in content_hashes):
                return
            updated = dict(self._entries)
            for content_hash in content_hashes:
                updated.pop(content_hash, None)
            self._entries = updated
