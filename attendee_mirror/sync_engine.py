from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import Any

from attendee_mirror.attendees import build_attendee_plan, should_update_event
from attendee_mirror.calendar_client import GoogleCalendarService, get_next_sync_token
from attendee_mirror.config_manager import ConfigManager
from attendee_mirror.errors import MissingSelfAttendeeError, SyncTokenExpiredError
from attendee_mirror.models import SyncResult
from attendee_mirror.state_store import StateStore, SyncCursorStore


logger = logging.getLogger(__name__)

UPDATE_OPTIONS = {"sendUpdates": "none"}


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def _event_start_text(event: dict[str, Any]) -> str:
    start = event.get("start") or {}
    return str(start.get("dateTime") or start.get("date") or "")


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        event_source: Any = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.cursor_store = SyncCursorStore(state_store)
        self._event_source = event_source

    def _source(self) -> Any:
        if self._event_source is not None:
            return self._event_source
        return GoogleCalendarService(self.config_manager.load().google)

    def _bootstrap_cursor(self, source: Any) -> str:
        token = get_next_sync_token(source)
        self.cursor_store.set(token)
        logger.info("nextSyncToken is set")
        return token

    def run_once(self, trigger: str = "manual") -> SyncResult:
        started_at = datetime.now(timezone.utc)
        run_id = self.state_store.start_sync_run(trigger=trigger)
        changes_applied = 0
        failures = 0

        try:
            source = self._source()
            calendar_id = self.config_manager.load().google.calendar_id
            cursor = self.cursor_store.get()

            # First run only records where the feed is; the existing history is left alone.
            if not cursor:
                logger.info("nextSyncToken is not found")
                self._bootstrap_cursor(source)
                return self._finish(
                    run_id=run_id,
                    started_at=started_at,
                    trigger=trigger,
                    status="bootstrapped",
                    message="Sync cursor initialized. No events processed.",
                    changes_applied=0,
                    failures=0,
                )

            target_emails = self.config_manager.target_emails()
            try:
                listing = source.list_changed(cursor)
            except SyncTokenExpiredError as exc:
                logger.warning("Stored sync token expired, bootstrapping again: %s", exc)
                self.state_store.record_audit_event(
                    run_id=run_id,
                    calendar_id=calendar_id,
                    event_id="sync",
                    action="sync_token_expired",
                    details={"trigger": trigger, "error": str(exc)},
                )
                self._bootstrap_cursor(source)
                return self._finish(
                    run_id=run_id,
                    started_at=started_at,
                    trigger=trigger,
                    status="bootstrapped",
                    message="Sync cursor expired and was re-initialized. No events processed.",
                    changes_applied=0,
                    failures=0,
                )

            events = listing.get("items") or []
            for event in events:
                outcome = self._sync_event(
                    source=source,
                    calendar_id=calendar_id,
                    event=event,
                    target_emails=target_emails,
                    run_id=run_id,
                    trigger=trigger,
                )
                if outcome == "updated":
                    changes_applied += 1
                elif outcome == "failed":
                    failures += 1

            self._bootstrap_cursor(source)
            return self._finish(
                run_id=run_id,
                started_at=started_at,
                trigger=trigger,
                status="success",
                message=f"Processed {len(events)} events, updated {changes_applied}, failed {failures}.",
                changes_applied=changes_applied,
                failures=failures,
            )
        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            logger.error("Sync run %s failed: %s", run_id, error_message)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                message=error_message,
                duration_ms=_elapsed_ms(started_at),
                changes_applied=changes_applied,
                failures=failures,
            )
            self.state_store.record_audit_event(
                run_id=run_id,
                calendar_id="system",
                event_id="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
            )
            raise

    def _sync_event(
        self,
        *,
        source: Any,
        calendar_id: str,
        event: dict[str, Any],
        target_emails: list[str],
        run_id: int,
        trigger: str,
    ) -> str:
        event_id = str(event.get("id", ""))
        logger.debug("event: %s", event)
        try:
            if not should_update_event(event, target_emails):
                logger.info("This event does not need to be updated: %s", event_id)
                return "skipped"
            plan = build_attendee_plan(event, target_emails)
            updated = source.submit_update(
                plan.event,
                calendar_id,
                event_id,
                dict(UPDATE_OPTIONS),
                {"If-Match": str(event.get("etag", ""))},
            )
        except MissingSelfAttendeeError as exc:
            logger.warning("%s", exc)
            self.state_store.record_audit_event(
                run_id=run_id,
                calendar_id=calendar_id,
                event_id=event_id,
                action="skip_missing_self_attendee",
                details={"trigger": trigger, "error": str(exc)},
            )
            return "failed"
        except Exception as exc:
            logger.exception("Failed to update event %s", event_id)
            self.state_store.record_audit_event(
                run_id=run_id,
                calendar_id=calendar_id,
                event_id=event_id,
                action="update_failed",
                details={"trigger": trigger, "error": f"{type(exc).__name__}: {exc}"},
            )
            return "failed"

        updated = updated or {}
        logger.info(
            'update the %s event "%s" from %s to %s: %s',
            _event_start_text(updated),
            updated.get("summary", ""),
            plan.previous_targets,
            plan.next_targets,
            event_id,
        )
        self.state_store.record_audit_event(
            run_id=run_id,
            calendar_id=calendar_id,
            event_id=event_id,
            action="update_attendees",
            details={
                "trigger": trigger,
                "summary": updated.get("summary", ""),
                "start": _event_start_text(updated),
                "before": plan.previous_targets,
                "after": plan.next_targets,
            },
        )
        return "updated"

    def _finish(
        self,
        *,
        run_id: int,
        started_at: datetime,
        trigger: str,
        status: str,
        message: str,
        changes_applied: int,
        failures: int,
    ) -> SyncResult:
        duration_ms = _elapsed_ms(started_at)
        self.state_store.finish_sync_run(
            run_id=run_id,
            status=status,
            message=message,
            duration_ms=duration_ms,
            changes_applied=changes_applied,
            failures=failures,
        )
        logger.info("Sync run %s %s: %s", run_id, status, message)
        return SyncResult(
            status=status,
            message=f"{message} run_id={run_id}",
            duration_ms=duration_ms,
            changes_applied=changes_applied,
            failures=failures,
            trigger=trigger,
        )
