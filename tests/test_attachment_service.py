from __future__ import annotations

import unittest

from tests._bootstrap import bootstrap_imports, reset_caches
from tests._db import dispose_session_factory, make_session_factory
from tests._fakes import FakeCoordinator


bootstrap_imports()
reset_caches()

from attachsync.attachment.models import Attachment  # noqa: E402
from attachsync.attachment.service import AttachmentService  # noqa: E402
from attachsync.remote.schemas import ResetFailedResult  # noqa: E402
from attachsync.upload.errors import InvalidInputError  # noqa: E402
from attachsync.upload.models import UploadQueueEntry  # noqa: E402
from attachsync.upload.queue_repo import UploadQueueRepo  # noqa: E402
from attachsync.upload.types import AttachmentRef  # noqa: E402


class AttachmentServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.db = self.factory()
        self.service = AttachmentService(self.db, user_id="u1")
        self.repo = UploadQueueRepo(self.db, user_id="u1")

    def tearDown(self) -> None:
        self.db.close()
        dispose_session_factory(self.factory)

    def test_requires_user(self) -> None:
        with self.assertRaises(InvalidInputError):
            AttachmentService(self.db, user_id="")

    def test_enqueue_creates_pending_attachment_and_queue_item(self) -> None:
        item = self.service.enqueue(
            AttachmentRef(1, "AAAA"),
            "h1",
            file_path="/data/a.pdf",
            mime_type="application/pdf",
        )

        self.assertEqual(item.content_hash, "h1")
        self.assertEqual(item.attempt_count, 0)
        attachment = self.service.find_by_ref(AttachmentRef(1, "AAAA"))
        self.assertEqual(attachment.upload_status, "pending")
        self.assertEqual(attachment.file_path, "/data/a.pdf")
        self.assertEqual(attachment.mime_type, "application/pdf")

    def test_enqueue_existing_attachment_keeps_file_hints(self) -> None:
        self.service.enqueue(AttachmentRef(1, "AAAA"), "h1", file_path="/data/a.pdf")
        self.repo.complete(content_hash="h1")

        self.service.enqueue(AttachmentRef(1, "AAAA"), "h2")

        attachment = self.service.find_by_ref(AttachmentRef(1, "AAAA"))
        self.assertEqual(attachment.content_hash, "h2")
        self.assertEqual(attachment.upload_status, "pending")
        self.assertEqual(attachment.file_path, "/data/a.pdf")
        self.db.commit()
        self.assertEqual(self.db.query(Attachment).count(), 1)

    def test_enqueue_rejects_empty_hash(self) -> None:
        with self.assertRaises(InvalidInputError):
            self.service.enqueue(AttachmentRef(1, "AAAA"), " ")
        self.assertIsNone(self.service.find_by_ref(AttachmentRef(1, "AAAA")))

    def test_repair_queue_reenqueues_orphaned_pending_attachments(self) -> None:
        self.service.enqueue(AttachmentRef(1, "AAAA"), "h1")
        self.service.enqueue(AttachmentRef(2, "BBBB"), "h1")
        self.service.enqueue(AttachmentRef(1, "CCCC"), "h2")
        self.service.enqueue(AttachmentRef(1, "DDDD"), "h3")
        self.repo.complete(content_hash="h3")
        self.db.query(UploadQueueEntry).delete()
        self.db.commit()

        repaired = self.service.repair_queue()

        self.assertEqual(repaired, 2)
        self.assertEqual(self.repo.count(), 2)
        self.assertIsNone(self.repo.get("h3"))
        self.assertEqual(self.service.repair_queue(), 0)

    def test_retry_failed_uploads_resets_returned_items(self) -> None:
        self.service.enqueue(AttachmentRef(1, "AAAA"), "h1")
        self.repo.fail(content_hash="h1")
        coordinator = FakeCoordinator()
        coordinator.reset_results = [
            ResetFailedResult(file_hash="h1", library_id=1, item_key="AAAA"),
        ]

        count = self.service.retry_failed_uploads(coordinator)

        self.assertEqual(count, 1)
        item = self.repo.get("h1")
        self.assertEqual(item.attempt_count, 0)
        self.assertIsNone(item.visibility)
        self.assertEqual(self.service.find_by_ref(AttachmentRef(1, "AAAA")).upload_status, "pending")

    def test_upload_stats(self) -> None:
        self.service.enqueue(AttachmentRef(1, "A"), "h1")
        self.service.enqueue(AttachmentRef(1, "B"), "h2")
        self.service.enqueue(AttachmentRef(1, "C"), "h3")
        self.service.enqueue(AttachmentRef(1, "D"), "h4")
        self.repo.complete(content_hash="h1")
        self.repo.fail(content_hash="h2")
        self.repo.fail(content_hash="h3", status="plan_limit")

        self.assertEqual(
            self.service.upload_stats(),
            {"pending": 1, "completed": 1, "failed": 1, "plan_limit": 1},
        )


if __name__ == "__main__":
    unittest.main()
