"""One-shot upload worker.

Usage:
    python -m attachsync.upload.worker [initial|background|manual]

Runs a single upload session until the queue is drained, then exits. It
supports graceful shutdown via SIGINT/SIGTERM: no new batches are claimed
and in-flight transfers are allowed to finish.
"""
from __future__ import annotations

import logging
import signal
import sys

from attachsync.config import Settings, get_settings
from attachsync.database import SessionLocal, engine
from attachsync.host.files import LocalFileAccessor
from attachsync.host.gate import SettingsSessionGate
from attachsync.init_db import init_db
from attachsync.remote.client import UploadApiClient
from attachsync.upload.controller import UploadController, build_uploader_config
from attachsync.upload.errors import SessionRefusedError

logger = logging.getLogger(__name__)


def build_controller(settings: Settings | None = None) -> UploadController:
    """Wire the controller with the process-wide collaborators."""
    settings = settings or get_settings()
    gate = SettingsSessionGate(settings)
    return UploadController(
        build_uploader_config(settings),
        gate=gate,
        coordinator=UploadApiClient.from_settings(settings),
        files=LocalFileAccessor(SessionLocal, user_id=gate.current_user_id() or ""),
        session_factory=SessionLocal,
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the worker process."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    args = sys.argv[1:] if argv is None else argv
    kind = args[0] if args else "background"

    init_db(engine)
    controller = build_controller(settings)

    def handle_signal(signum, _frame):
        logger.info("signal received, initiating shutdown", extra={"signal": signum})
        controller.stop(timeout=0)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        status = controller.run(kind)
    except SessionRefusedError as exc:
        logger.warning("upload session refused: %s", exc)
        raise SystemExit(2)
    finally:
        controller.close()

    raise SystemExit(0 if status.status != "failed" else 1)


if __name__ == "__main__":
    main()
