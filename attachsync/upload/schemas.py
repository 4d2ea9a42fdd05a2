from __future__ import annotations

from pydantic import Field, field_validator

from attachsync.common.schemas import CamelModel


class EnqueueRequest(CamelModel):
    library_id: int
    item_key: str = Field(min_length=1, max_length=32)
    content_hash: str = Field(min_length=1, max_length=128)
    file_path: str | None = None
    mime_type: str | None = None

    @field_validator("item_key", "content_hash")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class EnqueueResponse(CamelModel):
    content_hash: str
    library_id: int
    item_key: str
    attempt_count: int
    started: bool


class StartResponse(CamelModel):
    started: bool
    session_kind: str


class RetryFailedResponse(CamelModel):
    reset: int
    started: bool
