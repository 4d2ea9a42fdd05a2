from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from attachsync.attachment.service import AttachmentService
from attachsync.config import get_settings
from attachsync.upload.controller import UploadController
from attachsync.upload.errors import SessionRefusedError

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


def repair_queue_job(controller: UploadController) -> None:
    """Periodic queue/state divergence repair.

    Re-enqueues pending attachments that lost their queue item, fails items
    that exhausted their attempts, and kicks off a background session when
    repaired work is waiting.
    """
    user_id = controller.gate.current_user_id()
    if not user_id:
        return

    db = controller.session_factory()
    try:
        repaired = AttachmentService(db, user_id=user_id).repair_queue()
    except Exception:
        logger.exception("queue repair failed")
        return
    finally:
        db.close()

    try:
        exhausted = controller.fail_exhausted()
    except Exception:
        logger.exception("failing exhausted uploads failed")
        exhausted = 0

    logger.info("queue repair done repaired=%s exhausted=%s", repaired, exhausted)

    if repaired and not controller.is_running:
        try:
            controller.start("background")
        except SessionRefusedError as exc:
            logger.info("repair did not start a session: %s", exc)


def setup_scheduler(controller: UploadController) -> None:
    """Setup and start the scheduler."""
    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled")
        return

    scheduler.add_job(
        repair_queue_job,
        IntervalTrigger(seconds=max(10, settings.repair_interval_sec)),
        args=[controller],
        id="upload_queue_repair",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Scheduler started")


def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
