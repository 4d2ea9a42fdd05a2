"""Type definitions for the upload queue, executor and session controller."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

UploadStatus = Literal["pending", "completed", "failed", "plan_limit"]
SessionKind = Literal["initial", "background", "manual"]
SessionState = Literal["idle", "running", "draining", "failed"]
ItemOutcomeKind = Literal["completed", "failed", "plan_limit", "skipped"]

TERMINAL_UPLOAD_STATUSES: frozenset[str] = frozenset({"completed", "failed", "plan_limit"})


@dataclass(frozen=True)
class AttachmentRef:
    """Opaque host reference used to resolve the file bytes of an item."""

    library_id: int
    item_key: str

    def __str__(self) -> str:
        return f"{self.library_id}-{self.item_key}"


@dataclass(frozen=True)
class QueueItem:
    """Detached snapshot of an upload_queue row."""

    user_id: str
    content_hash: str
    ref: AttachmentRef
    visibility: datetime | None
    attempt_count: int


@dataclass(frozen=True)
class UploadCredential:
    url: str
    expires_at: datetime


@dataclass(frozen=True)
class ItemOutcome:
    """What happened to one claimed item; reported back to the controller."""

    content_hash: str
    kind: ItemOutcomeKind
    detail: str | None = None


@dataclass(frozen=True)
class UploaderConfig:
    """Runtime parameters for the upload session controller."""

    enabled: bool
    concurrency: int
    batch_size: int
    max_attempts: int
    visibility_timeout_min: int
    retry_delay_min: int
    transfer_max_attempts: int
    transfer_backoff_sec: float
    transfer_timeout_sec: float
    url_ttl_min: int
    url_safety_buffer_min: int
    url_batch_size: int
    max_consecutive_errors: int
    backoff_base_sec: float
    backoff_cap_sec: float
