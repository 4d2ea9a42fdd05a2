from __future__ import annotations

import unittest

import httpx

from tests._bootstrap import bootstrap_imports, reset_caches
from tests._db import dispose_session_factory, make_session_factory
from tests._fakes import FakeCoordinator, FakeFiles, FakeGate, make_config


bootstrap_imports()
reset_caches()

from attachsync.attachment.service import AttachmentService  # noqa: E402
from attachsync.scheduler import repair_queue_job  # noqa: E402
from attachsync.upload.controller import UploadController  # noqa: E402
from attachsync.upload.executor import UploadExecutor  # noqa: E402
from attachsync.upload.models import UploadQueueEntry  # noqa: E402
from attachsync.upload.queue_repo import UploadQueueRepo  # noqa: E402
from attachsync.upload.types import AttachmentRef  # noqa: E402


class RepairQueueJobTests(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.gate = FakeGate("u1")
        self.coordinator = FakeCoordinator()
        self.files = FakeFiles({"1-AAAA": b"a"})
        self.controller = UploadController(
            make_config(),
            gate=self.gate,
            coordinator=self.coordinator,
            files=self.files,
            session_factory=self.factory,
            executor=UploadExecutor(
                self.files,
                max_attempts=1,
                transport=httpx.MockTransport(lambda request: httpx.Response(200)),
                sleep=lambda _s: None,
            ),
        )

    def tearDown(self) -> None:
        self.controller.close()
        dispose_session_factory(self.factory)

    def test_orphaned_pending_attachment_is_requeued_and_uploaded(self) -> None:
        db = self.factory()
        try:
            AttachmentService(db, user_id="u1").enqueue(AttachmentRef(1, "AAAA"), "h1")
            db.query(UploadQueueEntry).delete()
            db.commit()
        finally:
            db.close()

        repair_queue_job(self.controller)
        status = self.controller.wait(timeout=10)

        self.assertEqual(status.session_kind, "background")
        self.assertEqual(status.completed, 1)
        self.assertEqual(self.coordinator.completed, ["h1"])

    def test_exhausted_items_are_failed_without_starting_a_session(self) -> None:
        db = self.factory()
        try:
            AttachmentService(db, user_id="u1").enqueue(AttachmentRef(1, "AAAA"), "h1")
            UploadQueueRepo(db, user_id="u1").upsert(
                content_hash="h1",
                ref=AttachmentRef(1, "AAAA"),
                visibility=None,
                attempt_count=3,
            )
        finally:
            db.close()

        repair_queue_job(self.controller)

        self.assertEqual(self.coordinator.failed, ["h1"])
        self.assertFalse(self.controller.is_running)
        self.assertEqual(self.controller.status.snapshot().status, "idle")

    def test_no_user_is_a_no_op(self) -> None:
        self.gate.user_id = None

        repair_queue_job(self.controller)

        self.assertFalse(self.controller.is_running)
        self.assertEqual(self.coordinator.failed, [])


if __name__ == "__main__":
    unittest.main()
