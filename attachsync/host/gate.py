from __future__ import annotations

from typing import Protocol

from attachsync.config import Settings


class SessionGate(Protocol):
    def is_authenticated(self) -> bool: ...

    def current_user_id(self) -> str | None: ...

    def plan_allows_upload(self) -> bool: ...


class SettingsSessionGate:
    """Session gate backed by the process settings (token + user id + plan flag)."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def is_authenticated(self) -> bool:
        return bool((self.settings.api_token or "").strip()) and bool(self.current_user_id())

    def current_user_id(self) -> str | None:
        return (self.settings.user_id or "").strip() or None

    def plan_allows_upload(self) -> bool:
        return self.settings.plan_allows_upload and self.settings.upload_enabled
