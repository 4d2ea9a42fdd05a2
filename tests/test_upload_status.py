from __future__ import annotations

import unittest

from tests._bootstrap import bootstrap_imports, reset_caches


bootstrap_imports()
reset_caches()

from attachsync.upload.status import UploadStatusStore  # noqa: E402


class UploadStatusStoreTests(unittest.TestCase):
    def test_begin_resets_counters(self) -> None:
        store = UploadStatusStore()
        store.begin(session_kind="manual", pending=3)
        store.bump("completed")

        status = store.begin(session_kind="background", pending=5)

        self.assertEqual(status.status, "in_progress")
        self.assertEqual(status.pending, 5)
        self.assertEqual(status.completed, 0)
        self.assertIsNotNone(status.started_at)

    def test_bump_adjusts_pending_except_for_skipped(self) -> None:
        store = UploadStatusStore()
        store.begin(session_kind="manual", pending=2)

        store.bump("completed")
        store.bump("skipped")
        status = store.bump("failed")

        self.assertEqual((status.pending, status.completed, status.failed, status.skipped), (0, 1, 1, 1))
        self.assertEqual(store.bump("failed").pending, 0)

    def test_failing_listener_does_not_block_others(self) -> None:
        store = UploadStatusStore()
        seen = []

        def broken(_status) -> None:  # noqa: ANN001
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        store.subscribe(seen.append)

        with self.assertLogs("attachsync.upload.status", level="ERROR"):
            store.update(current_item="1-AAAA")

        self.assertEqual([s.current_item for s in seen], ["1-AAAA"])

    def test_unsubscribe_is_idempotent(self) -> None:
        store = UploadStatusStore()
        seen = []
        unsubscribe = store.subscribe(seen.append)

        unsubscribe()
        unsubscribe()
        store.update(pending=1)

        self.assertEqual(seen, [])


if __name__ == "__main__":
    unittest.main()
