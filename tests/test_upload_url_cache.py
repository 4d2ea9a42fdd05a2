from __future__ import annotations

import unittest
from datetime import timedelta

from tests._bootstrap import bootstrap_imports, reset_caches
from tests._fakes import FakeClock, FakeCoordinator


bootstrap_imports()
reset_caches()

from attachsync.upload.errors import RemoteApiError  # noqa: E402
from attachsync.upload.url_cache import UploadUrlCache  # noqa: E402


class UploadUrlCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.coordinator = FakeCoordinator()
        self.cache = UploadUrlCache(
            self.coordinator,
            ttl=timedelta(minutes=90),
            safety_buffer=timedelta(minutes=30),
            batch_size=2,
            clock=self.clock,
        )

    def test_scenario_cached_until_ttl_minus_buffer(self) -> None:
        first = self.cache.get("h4")
        self.assertEqual(first, "https://storage.test/upload/h4")
        self.assertEqual(len(self.coordinator.url_requests), 1)

        self.clock.advance(minutes=10)
        self.assertEqual(self.cache.get("h4"), first)
        self.assertEqual(len(self.coordinator.url_requests), 1)

        # raw expiry is 90 minutes out, but the credential is unusable after 60
        self.clock.advance(minutes=50)
        self.cache.get("h4")
        self.assertEqual(self.coordinator.url_requests, [["h4"], ["h4"]])

    def test_credential_lifetime_counts_from_fetch_time(self) -> None:
        self.clock.advance(minutes=5)
        self.cache.get("h1")

        self.clock.advance(minutes=59)
        self.cache.get("h1")
        self.assertEqual(len(self.coordinator.url_requests), 1)

        self.clock.advance(minutes=1)
        self.cache.get("h1")
        self.assertEqual(len(self.coordinator.url_requests), 2)

    def test_get_batch_fetches_only_misses_in_chunks(self) -> None:
        self.cache.get("h1")
        self.coordinator.url_requests.clear()

        urls = self.cache.get_batch(["h1", "h2", "h3", "h2", "h4", "h5"])

        self.assertEqual(set(urls), {"h1", "h2", "h3", "h4", "h5"})
        self.assertEqual(self.coordinator.url_requests, [["h2", "h3"], ["h4", "h5"]])
        self.assertEqual(len(self.cache), 5)

    def test_fetch_failure_raises_and_caches_nothing(self) -> None:
        self.coordinator.urls_error = RemoteApiError("coordination api down", status_code=503)

        with self.assertRaises(RemoteApiError) as ctx:
            self.cache.get_batch(["h1", "h2"])

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(len(self.cache), 0)

    def test_unexpected_fetch_error_is_wrapped(self) -> None:
        self.coordinator.urls_error = RuntimeError("socket closed")

        with self.assertRaises(RemoteApiError) as ctx:
            self.cache.get("h1")

        self.assertIn("socket closed", str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)

    def test_hash_without_issued_url_is_not_cached(self) -> None:
        self.coordinator.get_upload_urls = lambda hashes: {"h1": "https://storage.test/h1", "h2": ""}  # type: ignore[method-assign]

        urls = self.cache.get_batch(["h1", "h2"])

        self.assertEqual(urls, {"h1": "https://storage.test/h1"})
        self.assertIsNone(self.cache.get("h2"))
        self.assertEqual(len(self.cache), 1)

    def test_evict_forces_refetch(self) -> None:
        self.cache.get("h1")
        self.cache.evict("h1", "unknown")

        self.assertEqual(len(self.cache), 0)
        self.cache.get("h1")
        self.assertEqual(self.coordinator.url_requests, [["h1"], ["h1"]])


if __name__ == "__main__":
    unittest.main()
