from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from attendee_mirror.errors import CursorResolutionError, SyncTokenExpiredError, UpdateConflictError
from attendee_mirror.models import GoogleCalendarConfig


SCOPES = ["https://www.googleapis.com/auth/calendar"]
TOKEN_URI = "https://oauth2.googleapis.com/token"
MAX_BOOTSTRAP_PAGES = 10000

logger = logging.getLogger(__name__)


def _http_status(exc: HttpError) -> int | None:
    status = getattr(exc.resp, "status", None)
    return int(status) if status is not None else None


def _load_credentials(config: GoogleCalendarConfig) -> Credentials:
    if config.refresh_token:
        creds = Credentials(
            token=None,
            refresh_token=config.refresh_token,
            client_id=config.client_id,
            client_secret=config.client_secret,
            token_uri=TOKEN_URI,
            scopes=SCOPES,
        )
        creds.refresh(Request())
        return creds

    token_path = Path(config.token_file)
    if not token_path.exists():
        raise RuntimeError(f"Google token file not found: {token_path}")
    creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
    if not creds.valid:
        if not creds.refresh_token:
            raise RuntimeError("Google credentials are invalid and carry no refresh token.")
        creds.refresh(Request())
        token_path.write_text(creds.to_json(), encoding="utf-8")
    return creds


def get_next_sync_token(source: Any, page_token: str | None = None, max_pages: int = MAX_BOOTSTRAP_PAGES) -> str:
    """Page through a full listing until the feed hands out a terminal sync token.

    ``source`` only needs ``list_full(page_token)``. A page carrying neither
    ``nextSyncToken`` nor ``nextPageToken`` breaks the listing contract.
    """
    for _ in range(max_pages):
        page = source.list_full(page_token)
        next_sync_token = page.get("nextSyncToken")
        if next_sync_token:
            return str(next_sync_token)
        page_token = page.get("nextPageToken")
        if not page_token:
            raise CursorResolutionError("nextSyncToken or nextPageToken not found")
    raise CursorResolutionError(f"No nextSyncToken after {max_pages} pages")


class GoogleCalendarService:
    def __init__(self, config: GoogleCalendarConfig, service: Any = None) -> None:
        self.config = config
        self._service = service

    @property
    def calendar_id(self) -> str:
        return self.config.calendar_id

    def _events(self) -> Any:
        if self._service is None:
            creds = _load_credentials(self.config)
            self._service = build("calendar", "v3", credentials=creds, cache_discovery=False)
        return self._service.events()

    def list_full(self, page_token: str | None = None) -> dict[str, Any]:
        return self._events().list(calendarId=self.calendar_id, pageToken=page_token).execute()

    def list_changed(self, sync_token: str) -> dict[str, Any]:
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            try:
                page = (
                    self._events()
                    .list(calendarId=self.calendar_id, syncToken=sync_token, pageToken=page_token)
                    .execute()
                )
            except HttpError as exc:
                if _http_status(exc) == 410:
                    raise SyncTokenExpiredError("Sync token is no longer valid; a full sync is required.") from exc
                raise
            items.extend(page.get("items") or [])
            page_token = page.get("nextPageToken")
            if not page_token:
                logger.debug("Listed %d changed events", len(items))
                return {"items": items, "nextSyncToken": page.get("nextSyncToken")}

    def submit_update(
        self,
        event: dict[str, Any],
        calendar_id: str,
        event_id: str,
        options: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        headers = dict(headers or {})
        request = self._events().update(calendarId=calendar_id, eventId=event_id, body=event, **(options or {}))
        request.headers.update(headers)
        try:
            return request.execute()
        except HttpError as exc:
            status = _http_status(exc)
            if status == 412:
                raise UpdateConflictError(event_id, headers.get("If-Match", "")) from exc
            logger.warning("Update of %s failed: HTTP %s", event_id, status)
            raise
