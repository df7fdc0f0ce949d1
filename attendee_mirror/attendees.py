from __future__ import annotations

import copy
import logging
from typing import Any, Iterable

from attendee_mirror.errors import MissingSelfAttendeeError
from attendee_mirror.models import AttendeePlan, SelfStatus


logger = logging.getLogger(__name__)

# An event without an attendee list is one the primary account organizes alone.
ORGANIZER_ONLY_STATUS = SelfStatus(response_status="accepted", optional=False)


def _attendees(event: dict[str, Any]) -> list[dict[str, Any]] | None:
    attendees = event.get("attendees")
    if attendees is None:
        return None
    return list(attendees)


def _is_target(attendee: dict[str, Any], target_set: set[str]) -> bool:
    return attendee.get("email") in target_set


def self_attendee_status(event: dict[str, Any]) -> SelfStatus:
    attendees = _attendees(event)
    if attendees is None:
        return ORGANIZER_ONLY_STATUS
    for attendee in attendees:
        if attendee.get("self") is True:
            return SelfStatus(
                response_status=attendee.get("responseStatus"),
                optional=attendee.get("optional") is True,
            )
    raise MissingSelfAttendeeError(str(event.get("id", "")))


def should_update_event(event: dict[str, Any], target_emails: Iterable[str]) -> bool:
    event_id = event.get("id")
    if event.get("status") == "cancelled":
        logger.info("This event is cancelled: %s", event_id)
        return False

    organizer = event.get("organizer") or {}
    if organizer.get("self") is not True and event.get("guestsCanInviteOthers") is False:
        logger.info("This event is not allowed to invite others: %s", event_id)
        return False

    attendees = _attendees(event)
    if attendees is None:
        logger.info("This event does not have attendees: %s", event_id)
        return True

    targets = list(target_emails)
    target_set = set(targets)
    status = self_attendee_status(event)
    drifted = any(
        attendee.get("responseStatus") != status.response_status
        or (attendee.get("optional") is True) != status.optional
        for attendee in attendees
        if _is_target(attendee, target_set)
    )
    if drifted:
        logger.info("This event status needs to be updated: %s", event_id)
        return True

    present = {attendee.get("email") for attendee in attendees}
    return any(email not in present for email in targets)


def build_attendee_plan(event: dict[str, Any], target_emails: Iterable[str]) -> AttendeePlan:
    """Rebuild the attendee list so every target mirrors the self status.

    Non-target attendees keep their relative order and content; target entries
    are regrouped at the end in configured order. Fields already present on a
    target entry are kept, except ``email``, ``responseStatus`` and
    ``optional``, which are overwritten. The input event is not modified.
    """
    targets = list(target_emails)
    target_set = set(targets)
    status = self_attendee_status(event)
    status_fields = status.as_attendee_fields()
    prev_attendees = _attendees(event) or []

    previous_targets = [copy.deepcopy(a) for a in prev_attendees if _is_target(a, target_set)]
    others = [copy.deepcopy(a) for a in prev_attendees if not _is_target(a, target_set)]

    next_targets: list[dict[str, Any]] = []
    for email in targets:
        previous = next((a for a in previous_targets if a.get("email") == email), None)
        entry = copy.deepcopy(previous) if previous is not None else {}
        entry["email"] = email
        if status.response_status is None:
            entry.pop("responseStatus", None)
        entry.update(status_fields)
        next_targets.append(entry)

    updated_event = copy.deepcopy(event)
    updated_event["attendees"] = others + next_targets
    return AttendeePlan(
        event=updated_event,
        previous_targets=previous_targets,
        next_targets=next_targets,
    )
