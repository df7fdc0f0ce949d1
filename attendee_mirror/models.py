from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


DEFAULT_CALENDAR_ID = "primary"
NEXT_SYNC_TOKEN_KEY = "nextSyncToken"
TARGET_EMAILS_ENV = "TARGET_EMAILS"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


@dataclass
class GoogleCalendarConfig:
    calendar_id: str = DEFAULT_CALENDAR_ID
    token_file: str = "token.json"
    client_id: str = ""
    client_secret: str = ""
    refresh_token: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleCalendarConfig":
        data = data or {}
        return cls(
            calendar_id=str(data.get("calendar_id", DEFAULT_CALENDAR_ID)).strip() or DEFAULT_CALENDAR_ID,
            token_file=str(data.get("token_file", "token.json")).strip() or "token.json",
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            refresh_token=str(data.get("refresh_token", "")).strip(),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(interval_seconds=max(30, int(data.get("interval_seconds", 300))))


@dataclass
class AppConfig:
    google: GoogleCalendarConfig = field(default_factory=GoogleCalendarConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    target_emails: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        raw_targets = data.get("target_emails")
        if isinstance(raw_targets, (list, tuple)):
            raw_targets = ",".join(str(x) for x in raw_targets)
        return cls(
            google=GoogleCalendarConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
            target_emails=None if raw_targets is None else str(raw_targets),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def resolved_target_emails(self) -> str | None:
        env_value = os.getenv(TARGET_EMAILS_ENV)
        if env_value is not None:
            return env_value
        return self.target_emails


@dataclass(frozen=True)
class SelfStatus:
    response_status: str | None
    optional: bool

    def as_attendee_fields(self) -> dict[str, Any]:
        # A self attendee without a response leaves the key off entirely.
        if self.response_status is None:
            return {"optional": self.optional}
        return {"responseStatus": self.response_status, "optional": self.optional}


@dataclass
class AttendeePlan:
    event: dict[str, Any]
    previous_targets: list[dict[str, Any]]
    next_targets: list[dict[str, Any]]


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    changes_applied: int
    failures: int
    trigger: str
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "changes_applied": self.changes_applied,
            "failures": self.failures,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
