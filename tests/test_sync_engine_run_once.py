import copy
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from attendee_mirror.config_manager import ConfigManager
from attendee_mirror.errors import (
    ConfigurationError,
    CursorResolutionError,
    SyncTokenExpiredError,
    UpdateConflictError,
)
from attendee_mirror.state_store import StateStore
from attendee_mirror.sync_engine import SyncEngine


class _FakeCalendar:
    calendar_id = "primary"

    def __init__(self) -> None:
        self.changed_items: list[dict] = []
        self.update_calls: list[tuple] = []
        self.full_list_calls: list[str | None] = []
        self.sync_token_counter = 0
        self.fail_ids: set[str] = set()
        self.expired = False

    def list_full(self, page_token: str | None = None) -> dict:
        self.full_list_calls.append(page_token)
        if page_token is None:
            return {"items": [], "nextPageToken": "page-2"}
        self.sync_token_counter += 1
        return {"items": [], "nextSyncToken": f"sync-{self.sync_token_counter}"}

    def list_changed(self, sync_token: str) -> dict:
        if self.expired:
            raise SyncTokenExpiredError("gone")
        return {"items": copy.deepcopy(self.changed_items), "nextSyncToken": "from-listing"}

    def submit_update(self, event, calendar_id, event_id, options, headers) -> dict:
        self.update_calls.append((copy.deepcopy(event), calendar_id, event_id, options, headers))
        if event_id in self.fail_ids:
            raise UpdateConflictError(event_id, headers.get("If-Match", ""))
        updated = copy.deepcopy(event)
        updated["etag"] = f'"{event_id}-next"'
        return updated


def _event(event_id: str, attendees=None, **extra) -> dict:
    event = {
        "id": event_id,
        "etag": f'"{event_id}-etag"',
        "status": "confirmed",
        "summary": f"Event {event_id}",
        "start": {"dateTime": "2026-03-01T09:00:00Z"},
        "organizer": {"email": "me@example.com", "self": True},
    }
    if attendees is not None:
        event["attendees"] = attendees
    event.update(extra)
    return event


class SyncEngineRunOnceTests(unittest.TestCase):
    def setUp(self) -> None:
        env_patcher = mock.patch.dict(os.environ)
        env_patcher.start()
        self.addCleanup(env_patcher.stop)
        os.environ.pop("TARGET_EMAILS", None)

        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.config_manager = ConfigManager(str(Path(self.temp_dir.name) / "config.yaml"))
        self.config_manager.update({"target_emails": "t1@example.com, t2@example.com"})
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.calendar = _FakeCalendar()
        self.engine = SyncEngine(self.config_manager, self.state_store, event_source=self.calendar)

    def _actions(self) -> list[str]:
        return [e["action"] for e in reversed(self.state_store.recent_audit_events())]

    def test_first_run_only_bootstraps_cursor(self) -> None:
        self.calendar.changed_items = [_event("evt-1")]
        with mock.patch.object(self.state_store, "set_meta", wraps=self.state_store.set_meta) as set_meta:
            result = self.engine.run_once(trigger="scheduled")

        self.assertEqual(result.status, "bootstrapped")
        self.assertEqual(self.calendar.update_calls, [])
        self.assertEqual(self.calendar.full_list_calls, [None, "page-2"])
        set_meta.assert_called_once_with("nextSyncToken", "sync-1")
        self.assertEqual(self.engine.cursor_store.get(), "sync-1")

    def test_first_run_does_not_need_target_emails(self) -> None:
        self.config_manager.update({"target_emails": None})
        result = self.engine.run_once()
        self.assertEqual(result.status, "bootstrapped")

    def test_incremental_run_updates_and_refreshes_cursor(self) -> None:
        self.engine.cursor_store.set("stored")
        self.calendar.changed_items = [
            _event(
                "evt-1",
                attendees=[
                    {"email": "me@example.com", "self": True, "responseStatus": "needsAction"},
                    {"email": "guest@example.com", "responseStatus": "accepted"},
                ],
            )
        ]

        result = self.engine.run_once()

        self.assertEqual(result.status, "success")
        self.assertEqual(result.changes_applied, 1)
        self.assertEqual(len(self.calendar.update_calls), 1)
        event, calendar_id, event_id, options, headers = self.calendar.update_calls[0]
        self.assertEqual(calendar_id, "primary")
        self.assertEqual(event_id, "evt-1")
        self.assertEqual(options, {"sendUpdates": "none"})
        self.assertEqual(headers, {"If-Match": '"evt-1-etag"'})
        self.assertEqual(
            event["attendees"],
            [
                {"email": "me@example.com", "self": True, "responseStatus": "needsAction"},
                {"email": "guest@example.com", "responseStatus": "accepted"},
                {"email": "t1@example.com", "responseStatus": "needsAction", "optional": False},
                {"email": "t2@example.com", "responseStatus": "needsAction", "optional": False},
            ],
        )
        # The cursor comes from a fresh full listing, not from the incremental response.
        self.assertEqual(self.engine.cursor_store.get(), "sync-1")
        self.assertIn("update_attendees", self._actions())

    def test_organizer_event_closed_to_guest_invites_is_submitted(self) -> None:
        self.engine.cursor_store.set("stored")
        self.calendar.changed_items = [
            _event(
                "evt-own",
                guestsCanInviteOthers=False,
                attendees=[{"email": "me@example.com", "self": True, "responseStatus": "accepted"}],
            ),
            _event(
                "evt-guest",
                organizer={"email": "boss@example.com"},
                guestsCanInviteOthers=False,
                attendees=[{"email": "me@example.com", "self": True, "responseStatus": "accepted"}],
            ),
        ]

        result = self.engine.run_once()

        self.assertEqual(result.changes_applied, 1)
        self.assertEqual([call[2] for call in self.calendar.update_calls], ["evt-own"])
        submitted = self.calendar.update_calls[0][0]
        self.assertFalse(submitted["guestsCanInviteOthers"])
        self.assertEqual(
            [a["email"] for a in submitted["attendees"]],
            ["me@example.com", "t1@example.com", "t2@example.com"],
        )

    def test_synchronized_events_are_not_submitted(self) -> None:
        self.engine.cursor_store.set("stored")
        self.calendar.changed_items = [
            _event(
                "evt-1",
                attendees=[
                    {"email": "me@example.com", "self": True, "responseStatus": "accepted"},
                    {"email": "t1@example.com", "responseStatus": "accepted"},
                    {"email": "t2@example.com", "responseStatus": "accepted", "optional": False},
                ],
            ),
            _event("evt-2", status="cancelled"),
        ]

        result = self.engine.run_once()

        self.assertEqual(result.status, "success")
        self.assertEqual(result.changes_applied, 0)
        self.assertEqual(self.calendar.update_calls, [])
        self.assertEqual(self.engine.cursor_store.get(), "sync-1")

    def test_empty_listing_still_persists_cursor(self) -> None:
        self.engine.cursor_store.set("stored")
        result = self.engine.run_once()
        self.assertEqual(result.status, "success")
        self.assertEqual(self.engine.cursor_store.get(), "sync-1")

    def test_failed_update_does_not_stop_batch(self) -> None:
        self.engine.cursor_store.set("stored")
        self.calendar.fail_ids = {"evt-1"}
        self.calendar.changed_items = [_event("evt-1"), _event("evt-2")]

        result = self.engine.run_once()

        self.assertEqual(result.status, "success")
        self.assertEqual(result.changes_applied, 1)
        self.assertEqual(result.failures, 1)
        self.assertEqual([call[2] for call in self.calendar.update_calls], ["evt-1", "evt-2"])
        self.assertEqual(self.engine.cursor_store.get(), "sync-1")
        self.assertIn("update_failed", self._actions())

    def test_missing_self_attendee_is_skipped(self) -> None:
        self.engine.cursor_store.set("stored")
        self.calendar.changed_items = [
            _event("evt-1", attendees=[{"email": "someone@example.com", "responseStatus": "accepted"}]),
            _event("evt-2"),
        ]

        result = self.engine.run_once()

        self.assertEqual(result.failures, 1)
        self.assertEqual([call[2] for call in self.calendar.update_calls], ["evt-2"])
        self.assertIn("skip_missing_self_attendee", self._actions())

    def test_second_pass_is_a_no_op(self) -> None:
        self.engine.cursor_store.set("stored")
        self.calendar.changed_items = [
            _event(
                "evt-1",
                attendees=[
                    {"email": "me@example.com", "self": True, "responseStatus": "tentative", "optional": True},
                    {"email": "t2@example.com", "responseStatus": "declined", "displayName": "T2"},
                ],
            )
        ]
        self.engine.run_once()
        self.calendar.changed_items = [self.calendar.update_calls[0][0]]

        result = self.engine.run_once()

        self.assertEqual(result.changes_applied, 0)
        self.assertEqual(len(self.calendar.update_calls), 1)

    def test_expired_cursor_bootstraps_again(self) -> None:
        self.engine.cursor_store.set("stale")
        self.calendar.expired = True
        self.calendar.changed_items = [_event("evt-1")]

        result = self.engine.run_once()

        self.assertEqual(result.status, "bootstrapped")
        self.assertEqual(self.calendar.update_calls, [])
        self.assertEqual(self.engine.cursor_store.get(), "sync-1")
        self.assertIn("sync_token_expired", self._actions())

    def test_missing_target_emails_is_fatal(self) -> None:
        self.engine.cursor_store.set("stored")
        self.config_manager.update({"target_emails": None})

        with self.assertRaises(ConfigurationError):
            self.engine.run_once()

        self.assertEqual(self.engine.cursor_store.get(), "stored")
        self.assertEqual(self.state_store.recent_sync_runs()[0]["status"], "error")
        self.assertIn("run_error", self._actions())

    def test_cursor_resolution_failure_is_fatal(self) -> None:
        self.calendar.list_full = mock.Mock(return_value={"items": []})

        with self.assertRaises(CursorResolutionError):
            self.engine.run_once()

        self.assertIsNone(self.engine.cursor_store.get())
        self.assertEqual(self.state_store.recent_sync_runs()[0]["status"], "error")


if __name__ == "__main__":
    unittest.main()
