from __future__ import annotations

import unittest
from datetime import timedelta

from tests._bootstrap import bootstrap_imports, reset_caches
from tests._db import dispose_session_factory, make_session_factory
from tests._fakes import FakeClock, FakeCoordinator


bootstrap_imports()
reset_caches()

from attachsync.attachment.service import AttachmentService  # noqa: E402
from attachsync.common.time import utcnow  # noqa: E402
from attachsync.remote.schemas import CompleteUploadResult  # noqa: E402
from attachsync.upload.errors import RemoteApiError  # noqa: E402
from attachsync.upload.protocol import UploadStateProtocol  # noqa: E402
from attachsync.upload.queue_repo import UploadQueueRepo  # noqa: E402
from attachsync.upload.types import AttachmentRef  # noqa: E402
from attachsync.upload.url_cache import UploadUrlCache  # noqa: E402


class UploadStateProtocolTests(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.db = self.factory()
        self.clock = FakeClock()
        self.coordinator = FakeCoordinator()
        self.cache = UploadUrlCache(self.coordinator, clock=self.clock)
        self.protocol = UploadStateProtocol(
            self.coordinator,
            session_factory=self.factory,
            user_id="u1",
            url_cache=self.cache,
        )
        self.service = AttachmentService(self.db, user_id="u1")
        self.repo = UploadQueueRepo(self.db, user_id="u1")

        self.service.enqueue(AttachmentRef(1, "AAAA"), "h1")
        self.item = self.repo.claim(
            now=utcnow() + timedelta(seconds=1),
            limit=1,
            max_attempts=3,
            visibility_timeout_min=15,
        ).claimed[0]
        self.cache.get("h1")

    def tearDown(self) -> None:
        self.db.close()
        dispose_session_factory(self.factory)

    def _status(self) -> str | None:
        return self.service.find_by_ref(AttachmentRef(1, "AAAA")).upload_status

    def test_mark_completed_records_remote_then_local(self) -> None:
        outcome = self.protocol.mark_completed(self.item, mime_type="application/pdf", size=10, page_count=2)

        self.assertEqual(outcome.kind, "completed")
        self.assertEqual(self.coordinator.completed, ["h1"])
        self.assertIsNone(self.repo.get("h1"))
        self.assertEqual(self._status(), "completed")
        self.assertEqual(len(self.cache), 0)

    def test_remote_failure_leaves_local_row_untouched(self) -> None:
        self.coordinator.complete_error = RemoteApiError("complete-upload failed with status 503", status_code=503)

        with self.assertRaises(RemoteApiError):
            self.protocol.mark_completed(self.item, mime_type="application/pdf", size=10, page_count=2)

        row = self.repo.get("h1")
        self.assertIsNotNone(row)
        self.assertEqual(row.attempt_count, 1)
        self.assertEqual(row.visibility, self.item.visibility)
        self.assertEqual(self._status(), "pending")

    def test_plan_limit_answer_records_plan_limit(self) -> None:
        self.coordinator.complete_result = CompleteUploadResult(
            upload_completed=False,
            error="plan_limit",
            required_pages=40,
            remaining_pages=3,
        )

        outcome = self.protocol.mark_completed(self.item, mime_type="application/pdf", size=10, page_count=40)

        self.assertEqual(outcome.kind, "plan_limit")
        self.assertIsNone(self.repo.get("h1"))
        self.assertEqual(self._status(), "plan_limit")

    def test_mark_failed_records_remote_then_local(self) -> None:
        outcome = self.protocol.mark_failed(self.item, reason="File not found")

        self.assertEqual(outcome.kind, "failed")
        self.assertEqual(self.coordinator.failed, ["h1"])
        self.assertIsNone(self.repo.get("h1"))
        self.assertEqual(self._status(), "failed")

    def test_mark_failed_remote_error_keeps_row(self) -> None:
        self.coordinator.fail_error = RemoteApiError("fail-upload unavailable")

        with self.assertRaises(RemoteApiError):
            self.protocol.mark_failed(self.item, reason="File not found")

        self.assertIsNotNone(self.repo.get("h1"))
        self.assertEqual(self._status(), "pending")


if __name__ == "__main__":
    unittest.main()
