"""Upload pipeline domain errors."""
from __future__ import annotations


class UploadError(RuntimeError):
    """Base error for the upload pipeline."""


class InvalidInputError(UploadError):
    """Raised when a queue operation receives unusable input (e.g. empty content hash)."""


class PermanentUploadError(UploadError):
    """Raised when an item can never succeed (missing file, missing path, client error)."""


class TransferError(UploadError):
    """Raised when the byte transfer to the signed upload URL fails."""

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class RemoteApiError(UploadError):
    """Raised when the remote upload coordination API fails."""

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class SessionRefusedError(UploadError):
    """Raised when an upload session cannot start (no principal, plan gate)."""
