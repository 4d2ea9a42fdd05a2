"""HTTP client for the remote upload coordination API."""
from __future__ import annotations

import logging
import time
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from attachsync.config import Settings
from attachsync.remote.schemas import (
    CompleteUploadRequest,
    CompleteUploadResult,
    FailUploadResult,
    ResetFailedResult,
)
from attachsync.upload.errors import RemoteApiError

logger = logging.getLogger(__name__)


class UploadCoordinator(Protocol):
    """Remote authority for upload credentials and upload outcomes."""

    def get_upload_urls(self, file_hashes: list[str]) -> dict[str, str]: ...

    def mark_completed(self, file_hash: str, mime_type: str, size: int, page_count: int | None) -> CompleteUploadResult: ...

    def mark_failed(self, file_hash: str) -> FailUploadResult: ...

    def reset_failed_uploads(self) -> list[ResetFailedResult]: ...


class UploadApiClient:
    """httpx-backed implementation of ``UploadCoordinator``.

    Transport errors and 5xx answers raise a retryable ``RemoteApiError``;
    4xx answers raise a non-retryable one.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_token: str | None = None,
        timeout_sec: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"content-type": "application/json"}
        if api_token:
            headers["authorization"] = f"Bearer {api_token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(float(timeout_sec or 0.0) or 30.0),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "UploadApiClient":
        return cls(
            settings.api_base_url,
            api_token=settings.api_token,
            timeout_sec=settings.api_timeout_sec,
        )

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, body: Any) -> Any:
        started = time.perf_counter()
        try:
            resp = self._client.post(path, json=body)
        except httpx.TransportError as exc:
            logger.warning(
                "remote api transport error path=%s elapsed_ms=%s error=%s",
                path,
                int((time.perf_counter() - started) * 1000),
                exc,
            )
            raise RemoteApiError(f"{path}: {exc}", retryable=True) from exc

        if resp.status_code >= 400:
            retryable = resp.status_code >= 500 or resp.status_code == 429
            logger.warning(
                "remote api error path=%s status=%s body=%s",
                path,
                resp.status_code,
                resp.text[:200],
            )
            raise RemoteApiError(
                f"{path} failed with status {resp.status_code}",
                status_code=resp.status_code,
                retryable=retryable,
            )

        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteApiError(f"{path}: invalid JSON response: {resp.text[:200]}") from exc

    def get_upload_urls(self, file_hashes: list[str]) -> dict[str, str]:
        if not file_hashes:
            return {}
        data = self._post("/attachments/upload-urls", list(file_hashes))
        if not isinstance(data, dict):
            raise RemoteApiError("upload-urls: expected an object keyed by file hash")
        return {str(k): str(v) for k, v in data.items() if v}

    def mark_completed(self, file_hash: str, mime_type: str, size: int, page_count: int | None) -> CompleteUploadResult:
        body = CompleteUploadRequest(
            file_hash=file_hash,
            mime_type=mime_type,
            page_count=page_count,
            file_size=size,
        )
        data = self._post("/attachments/complete-upload", body.model_dump())
        try:
            return CompleteUploadResult.model_validate(data or {})
        except ValidationError as exc:
            raise RemoteApiError(f"complete-upload: unexpected response: {exc}") from exc

    def mark_failed(self, file_hash: str) -> FailUploadResult:
        data = self._post("/attachments/fail-upload", {"file_hash": file_hash})
        try:
            return FailUploadResult.model_validate(data or {})
        except ValidationError as exc:
            raise RemoteApiError(f"fail-upload: unexpected response: {exc}") from exc

    def reset_failed_uploads(self) -> list[ResetFailedResult]:
        data = self._post("/attachments/reset-failed-uploads", {})
        if not isinstance(data, list):
            raise RemoteApiError("reset-failed-uploads: expected a list")
        try:
            return [ResetFailedResult.model_validate(item) for item in data]
        except ValidationError as exc:
            raise RemoteApiError(f"reset-failed-uploads: unexpected response: {exc}") from exc
