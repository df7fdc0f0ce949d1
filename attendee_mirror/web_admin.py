from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from attendee_mirror.config_manager import SECRET_FIELDS, ConfigManager
from attendee_mirror.errors import ConfigurationError
from attendee_mirror.scheduler import SyncScheduler
from attendee_mirror.state_store import StateStore
from attendee_mirror.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    google = sanitized.get("google")
    if not isinstance(google, dict):
        return sanitized
    google = dict(google)
    current_google = current.get("google", {})
    for key in SECRET_FIELDS:
        value = google.get(key)
        if value is None:
            continue
        if str(value).strip() in {"", "***"}:
            if current_google.get(key):
                google.pop(key, None)
            else:
                google[key] = ""
    if google:
        sanitized["google"] = google
    else:
        sanitized.pop("google", None)
    return sanitized


def create_app() -> FastAPI:
    config_path = os.getenv("ATTENDEE_MIRROR_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("ATTENDEE_MIRROR_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Attendee Mirror Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        config = app.state.context.config_manager.masked()
        try:
            targets = app.state.context.config_manager.target_emails()
        except ConfigurationError:
            targets = []
        return {"config": config, "resolved_target_emails": targets}

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/sync/cursor")
    def sync_cursor() -> dict[str, Any]:
        token = app.state.context.sync_engine.cursor_store.get()
        return {"initialized": token is not None}

    @app.delete("/api/sync/cursor")
    def reset_sync_cursor() -> dict[str, Any]:
        removed = app.state.context.sync_engine.cursor_store.clear()
        app.state.context.state_store.record_audit_event(
            calendar_id="system",
            event_id="sync",
            action="reset_sync_cursor",
            details={"removed": removed},
        )
        return {"message": "sync cursor cleared", "removed": removed}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    return app
