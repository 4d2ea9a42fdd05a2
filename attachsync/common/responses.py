from __future__ import annotations

from enum import IntEnum
from typing import Any

from pydantic import BaseModel


class ErrorCode(IntEnum):
    """Envelope codes returned by the local control API."""

    BAD_REQUEST = 40000
    INVALID_INPUT = 40001
    SESSION_REFUSED = 40301
    NOT_FOUND = 40400
    VALIDATION = 42200
    INTERNAL = 50000
    REMOTE_UNAVAILABLE = 50201


class ApiResponse(BaseModel):
    success: bool
    code: int
    message: str
    data: Any | None = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "OK") -> "ApiResponse":
        return cls(success=True, code=0, message=message, data=data)

    @classmethod
    def fail(cls, code: int, message: str, data: Any = None) -> "ApiResponse":
        return cls(success=False, code=int(code), message=message, data=data)
