from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CompleteUploadRequest(BaseModel):
    file_hash: str
    mime_type: str
    page_count: int | None = None
    file_size: int | None = None


class CompleteUploadResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    upload_completed: bool = True
    queued: bool = False
    error: str | None = None
    required_pages: int | None = None
    remaining_pages: int | None = None

    @property
    def plan_limit_reached(self) -> bool:
        return not self.upload_completed and (self.error or "").strip().lower() == "plan_limit"


class FailUploadResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool = True
    message: str = ""


class ResetFailedResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file_hash: str
    library_id: int
    item_key: str = Field(validation_alias=AliasChoices("item_key", "zotero_key"))
