"""Observable upload session status (read model)."""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict

from attachsync.common.time import utcnow

logger = logging.getLogger(__name__)

SessionStatusValue = Literal["idle", "in_progress", "completed", "failed"]


class SessionStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_kind: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    status: SessionStatusValue = "idle"
    pending: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    current_item: str | None = None
    error: str | None = None


StatusListener = Callable[[SessionStatus], None]


class UploadStatusStore:
    """Holds the current ``SessionStatus`` and notifies subscribers on change.

    Only the session controller writes; any thread may read or subscribe.
    """

    def __init__(self) -> None:
        self._status = SessionStatus()
        self._listeners: list[StatusListener] = []
        self._lock = threading.Lock()

    def snapshot(self) -> SessionStatus:
        return self._status

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def replace(self, status: SessionStatus) -> SessionStatus:
        with self._lock:
            self._status = status
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status)
            except Exception:
                logger.exception("status listener failed")
        return status

    def update(self, **changes: Any) -> SessionStatus:
        return self.replace(self._status.model_copy(update=changes))

    def begin(self, *, session_kind: str, pending: int) -> SessionStatus:
        return self.replace(
            SessionStatus(
                session_kind=session_kind,
                started_at=utcnow(),
                status="in_progress",
                pending=pending,
            )
        )

    def bump(self, field: Literal["completed", "failed", "skipped"]) -> SessionStatus:
        current = self._status
        changes: dict[str, Any] = {field: getattr(current, field) + 1}
        if field != "skipped":
            changes["pending"] = max(0, current.pending - 1)
        return self.update(**changes)
