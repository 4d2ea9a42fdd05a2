"""Upload session controller: claim -> execute -> drain loop with backoff."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from queue import Empty, Queue
from typing import Callable

from sqlalchemy.orm import Session

from attachsync.attachment.service import AttachmentService
from attachsync.common.time import utcnow
from attachsync.config import Settings, get_settings
from attachsync.host.files import FileAccessor
from attachsync.host.gate import SessionGate
from attachsync.remote.client import UploadCoordinator
from attachsync.upload.errors import SessionRefusedError
from attachsync.upload.executor import UploadExecutor
from attachsync.upload.pipeline import UploadPipeline
from attachsync.upload.protocol import UploadStateProtocol
from attachsync.upload.queue_repo import UploadQueueRepo, compute_backoff
from attachsync.upload.status import SessionStatus, UploadStatusStore
from attachsync.upload.types import AttachmentRef, ItemOutcome, QueueItem, SessionKind, SessionState, UploaderConfig
from attachsync.upload.url_cache import UploadUrlCache

logger = logging.getLogger(__name__)

SESSION_KINDS: frozenset[str] = frozenset({"initial", "background", "manual"})


def build_uploader_config(settings: Settings | None = None) -> UploaderConfig:
    """Build uploader configuration from settings."""
    settings = settings or get_settings()
    return UploaderConfig(
        enabled=settings.upload_enabled,
        concurrency=max(1, settings.upload_concurrency),
        batch_size=max(1, settings.upload_batch_size),
        max_attempts=max(1, settings.upload_max_attempts),
        visibility_timeout_min=settings.upload_visibility_timeout_min,
        retry_delay_min=settings.upload_retry_delay_min,
        transfer_max_attempts=settings.upload_transfer_max_attempts,
        transfer_backoff_sec=settings.upload_transfer_backoff_sec,
        transfer_timeout_sec=settings.upload_transfer_timeout_sec,
        url_ttl_min=settings.upload_url_ttl_min,
        url_safety_buffer_min=settings.upload_url_safety_buffer_min,
        url_batch_size=settings.upload_url_batch_size,
        max_consecutive_errors=max(1, settings.session_max_consecutive_errors),
        backoff_base_sec=settings.session_backoff_base_sec,
        backoff_cap_sec=settings.session_backoff_cap_sec,
    )


class UploadController:
    """Owns the queue, URL cache, executor and session status for one process.

    Sessions run on a dedicated thread and dispatch claimed items into a
    bounded ``ThreadPoolExecutor``. Workers never touch the status model;
    they report "started" through a queue and return an ``ItemOutcome``,
    and the session thread applies both.
    """

    def __init__(
        self,
        cfg: UploaderConfig,
        *,
        gate: SessionGate,
        coordinator: UploadCoordinator,
        files: FileAccessor,
        session_factory: Callable[[], Session],
        executor: UploadExecutor | None = None,
        url_cache: UploadUrlCache | None = None,
        status: UploadStatusStore | None = None,
        clock: Callable[[], datetime] = utcnow,
        backoff_wait: Callable[[float], None] | None = None,
    ) -> None:
        self.cfg = cfg
        self.gate = gate
        self.coordinator = coordinator
        self.files = files
        self.session_factory = session_factory
        self.clock = clock
        self.executor = executor or UploadExecutor(
            files,
            max_attempts=cfg.transfer_max_attempts,
            backoff_sec=cfg.transfer_backoff_sec,
            timeout_sec=cfg.transfer_timeout_sec,
        )
        self.url_cache = url_cache or UploadUrlCache(
            coordinator,
            ttl=timedelta(minutes=cfg.url_ttl_min),
            safety_buffer=timedelta(minutes=cfg.url_safety_buffer_min),
            batch_size=cfg.url_batch_size,
            clock=clock,
        )
        self.status = status or UploadStatusStore()

        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._state: SessionState = "idle"
        self._backoff_wait = backoff_wait or self._stop_event.wait

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def subscribe(self, listener: Callable[[SessionStatus], None]) -> Callable[[], None]:
        return self.status.subscribe(listener)

    # ------------------------------------------------------------------
    # Session gate
    # ------------------------------------------------------------------

    def _authorize(self) -> str:
        if not self.gate.is_authenticated():
            raise SessionRefusedError("no authenticated user")
        user_id = self.gate.current_user_id()
        if not user_id:
            raise SessionRefusedError("no current user id")
        if not self.cfg.enabled or not self.gate.plan_allows_upload():
            raise SessionRefusedError("file upload is disabled by plan or configuration")
        return user_id

    def _gate_still_valid(self, user_id: str) -> bool:
        return (
            self.gate.is_authenticated()
            and self.gate.current_user_id() == user_id
            and self.gate.plan_allows_upload()
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def enqueue(
        self,
        ref: AttachmentRef,
        content_hash: str,
        *,
        file_path: str | None = None,
        mime_type: str | None = None,
    ) -> QueueItem:
        user_id = self.gate.current_user_id()
        if not user_id:
            raise SessionRefusedError("no current user id")
        db = self.session_factory()
        try:
            return AttachmentService(db, user_id=user_id).enqueue(
                ref,
                content_hash,
                file_path=file_path,
                mime_type=mime_type,
            )
        finally:
            db.close()

    def start(self, kind: SessionKind = "background") -> bool:
        """Start a session on a background thread.

        Returns:
            True if a session was started, False if one is already running

        Raises:
            SessionRefusedError: If there is no principal or uploads are disallowed
        """
        if kind not in SESSION_KINDS:
            raise ValueError(f"unknown session kind: {kind}")

        with self._lock:
            if self.is_running:
                logger.info("upload session already running, start ignored", extra={"kind": kind})
                return False

            user_id = self._authorize()
            self._stop_event.clear()
            self._state = "running"
            self._thread = threading.Thread(
                target=self._run_session,
                args=(kind, user_id),
                name="upload-session",
                daemon=True,
            )
            self._thread.start()

        logger.info("upload session started kind=%s user_id=%s", kind, user_id)
        return True

    def wait(self, timeout: float | None = None) -> SessionStatus:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return self.status.snapshot()

    def run(self, kind: SessionKind = "background") -> SessionStatus:
        """Run a session to completion on the calling thread's behalf."""
        self.start(kind)
        return self.wait()

    def stop(self, timeout: float | None = None) -> SessionStatus:
        """Stop claiming new batches and wait for in-flight items to drain."""
        with self._lock:
            if not self.is_running:
                return self.status.snapshot()
            self._stop_event.set()
            self._state = "draining"

        logger.info("upload session stopping")
        return self.wait(timeout)

    def fail_exhausted(self) -> int:
        """Permanently fail items that ran out of attempts and are no longer claimed.

        Returns:
            Number of items failed
        """
        user_id = self.gate.current_user_id()
        if not user_id:
            return 0

        db = self.session_factory()
        try:
            items = UploadQueueRepo(db, user_id=user_id).list_exhausted(
                now=self.clock(),
                max_attempts=self.cfg.max_attempts,
            )
        finally:
            db.close()

        protocol = self._build_protocol(user_id)
        failed = 0
        for item in items:
            try:
                protocol.mark_failed(item, reason="Max attempts reached")
                failed += 1
            except Exception as exc:
                logger.warning(
                    "could not fail exhausted item content_hash=%s attempts=%s error=%s",
                    item.content_hash,
                    item.attempt_count,
                    exc,
                )
        return failed

    def close(self) -> None:
        self.stop()
        self.executor.close()
        close_coordinator = getattr(self.coordinator, "close", None)
        if callable(close_coordinator):
            close_coordinator()

    # ------------------------------------------------------------------
    # Session loop
    # ------------------------------------------------------------------

    def _build_protocol(self, user_id: str) -> UploadStateProtocol:
        return UploadStateProtocol(
            self.coordinator,
            session_factory=self.session_factory,
            user_id=user_id,
            url_cache=self.url_cache,
        )

    def _count_pending(self, user_id: str) -> int:
        db = self.session_factory()
        try:
            return UploadQueueRepo(db, user_id=user_id).count()
        finally:
            db.close()

    def _claim(self, user_id: str) -> list[QueueItem]:
        db = self.session_factory()
        try:
            repo = UploadQueueRepo(db, user_id=user_id)
            self.status.update(pending=repo.count())
            result = repo.claim(
                now=self.clock(),
                limit=self.cfg.batch_size,
                max_attempts=self.cfg.max_attempts,
                visibility_timeout_min=self.cfg.visibility_timeout_min,
            )
            return result.claimed
        finally:
            db.close()

    def _release_claims(self, user_id: str, claimed: list[QueueItem]) -> None:
        if not claimed:
            return
        db = self.session_factory()
        try:
            repo = UploadQueueRepo(db, user_id=user_id)
            for item in claimed:
                repo.release(content_hash=item.content_hash, now=self.clock())
        except Exception:
            # Unreleased rows come back after the visibility timeout.
            logger.exception("could not release claimed uploads count=%s", len(claimed))
        finally:
            db.close()

    def _run_session(self, kind: str, user_id: str) -> None:
        try:
            pending = self._count_pending(user_id)
        except Exception:
            logger.exception("could not count pending uploads")
            pending = 0
        self.status.begin(session_kind=kind, pending=pending)

        pipeline = UploadPipeline(
            executor=self.executor,
            protocol=self._build_protocol(user_id),
            session_factory=self.session_factory,
            user_id=user_id,
            max_attempts=self.cfg.max_attempts,
            retry_delay_min=self.cfg.retry_delay_min,
            clock=self.clock,
        )

        final_status = "completed"
        error: str | None = None
        consecutive_errors = 0
        pool = ThreadPoolExecutor(max_workers=self.cfg.concurrency, thread_name_prefix="upload-worker")

        try:
            while not self._stop_event.is_set():
                if not self._gate_still_valid(user_id):
                    logger.warning("upload session gate revoked, ending session", extra={"user_id": user_id})
                    final_status, error = "failed", "user is no longer allowed to upload"
                    break

                claimed: list[QueueItem] = []
                try:
                    claimed = self._claim(user_id)
                    if not claimed:
                        break
                    urls = self.url_cache.get_batch(item.content_hash for item in claimed)
                except Exception as exc:
                    consecutive_errors += 1
                    logger.exception(
                        "upload cycle error consecutive_errors=%s",
                        consecutive_errors,
                    )
                    self._release_claims(user_id, claimed)
                    if consecutive_errors >= self.cfg.max_consecutive_errors:
                        final_status, error = "failed", str(exc) or exc.__class__.__name__
                        logger.error(
                            "upload session failed after %s consecutive errors",
                            consecutive_errors,
                        )
                        break
                    delay = compute_backoff(
                        consecutive_errors,
                        base_sec=self.cfg.backoff_base_sec,
                        cap_sec=self.cfg.backoff_cap_sec,
                    )
                    self._backoff_wait(delay.total_seconds())
                    continue

                consecutive_errors = 0
                self._dispatch(pool, pipeline, claimed, urls)
        except Exception as exc:
            logger.exception("upload session crashed")
            final_status, error = "failed", str(exc) or exc.__class__.__name__
        finally:
            pool.shutdown(wait=True)
            self.status.update(
                status=final_status,
                error=error,
                current_item=None,
                finished_at=utcnow(),
            )
            # A failed session stays visible as failed until the next start().
            self._state = "failed" if final_status == "failed" else "idle"
            snapshot = self.status.snapshot()
            logger.info(
                "upload session finished status=%s completed=%s failed=%s skipped=%s pending=%s",
                snapshot.status,
                snapshot.completed,
                snapshot.failed,
                snapshot.skipped,
                snapshot.pending,
            )

    def _dispatch(
        self,
        pool: ThreadPoolExecutor,
        pipeline: UploadPipeline,
        claimed: list[QueueItem],
        urls: dict[str, str],
    ) -> None:
        started: "Queue[str]" = Queue()

        def execute(item: QueueItem) -> ItemOutcome:
            started.put(str(item.ref))
            return pipeline.process(item, urls.get(item.content_hash))

        futures: dict[Future, QueueItem] = {pool.submit(execute, item): item for item in claimed}
        not_done = set(futures)
        while not_done:
            done, not_done = wait(not_done, timeout=0.2, return_when=FIRST_COMPLETED)
            self._drain_started(started)
            for future in done:
                self._apply(futures[future], future)

        self._drain_started(started)
        self.status.update(current_item=None)

    def _drain_started(self, started: "Queue[str]") -> None:
        latest: str | None = None
        while True:
            try:
                latest = started.get_nowait()
            except Empty:
                break
        if latest is not None:
            self.status.update(current_item=latest)

    def _apply(self, item: QueueItem, future: Future) -> None:
        try:
            outcome: ItemOutcome = future.result()
        except Exception as exc:
            logger.error(
                "upload item error content_hash=%s attempts=%s error=%s",
                item.content_hash,
                item.attempt_count,
                exc,
            )
            self.status.bump("skipped")
            return

        if outcome.kind == "completed":
            self.status.bump("completed")
        elif outcome.kind in ("failed", "plan_limit"):
            self.status.bump("failed")
        else:
            self.status.bump("skipped")
