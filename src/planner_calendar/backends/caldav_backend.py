"""CalDAV event store (Nextcloud, ownCloud, Radicale, etc.).

Booking fields that iCalendar has no slot for are kept in ``X-PLANNER-*``
properties on the VEVENT. A reschedule rewrites DTSTART, DTEND and the
audit trail in one PUT.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from datetime import date as date_type
from datetime import datetime, timedelta
from typing import Any

from .base import (
    CalendarEvent,
    EventNotFoundError,
    EventStatus,
    EventType,
    NewEvent,
    TimeChangeRecord,
    apply_status,
    apply_time_change,
    check_version,
    wall_clock,
)
from ..recurrence import RecurrenceRule

logger = logging.getLogger("planner-calendar")

PRODID = "-//planner-calendar//EN"

# CalendarEvent attribute -> iCalendar property for the plain text fields
_TEXT_PROPS = {
    "lead_name": "X-PLANNER-LEAD-NAME",
    "lead_email": "X-PLANNER-LEAD-EMAIL",
    "lead_phone": "X-PLANNER-LEAD-PHONE",
    "community": "X-PLANNER-COMMUNITY",
}


def _text(vevent: Any, name: str, default: str = "") -> str:
    value = vevent.get(name)
    return str(value) if value else default


def _as_datetime(value: Any) -> datetime:
    # all-day events carry plain dates
    if isinstance(value, date_type) and not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day)
    return wall_clock(value)


class CalDAVBackend:
    """Event store for CalDAV servers (Nextcloud, etc.)."""

    def __init__(self, account_name: str, config: dict[str, Any]):
        self._name = account_name
        self._config = config
        self._calendar = None  # Lazy init

    def _get_calendar(self):
        """Lazy-initialize CalDAV client and calendar."""
        if self._calendar is not None:
            return self._calendar

        import caldav

        username = os.environ.get(self._config["username_env"], "")
        password = os.environ.get(self._config["password_env"], "")
        if not username or not password:
            raise ValueError(
                f"Account '{self._name}': CalDAV credentials not set "
                f"({self._config['username_env']}, {self._config['password_env']})"
            )

        url = self._config["url"]
        client = caldav.DAVClient(url=url, username=username, password=password)

        # If URL points to a specific calendar, use it directly
        # Otherwise, get principal and find calendar by name
        calendar_name_filter = self._config.get("calendar_name")
        if calendar_name_filter:
            principal = client.principal()
            calendars = principal.calendars()
            for cal in calendars:
                if cal.name == calendar_name_filter:
                    self._calendar = cal
                    break
            if self._calendar is None:
                available = [c.name for c in calendars]
                raise ValueError(
                    f"Account '{self._name}': CalDAV calendar '{calendar_name_filter}' not found. "
                    f"Available: {available}"
                )
        else:
            self._calendar = caldav.Calendar(client=client, url=url)

        logger.info("CalDAV connected: %s → %s", self._name, url)
        return self._calendar

    # -- VEVENT <-> CalendarEvent -------------------------------------------

    def _parse_vevent(self, vevent: Any) -> CalendarEvent:
        """Parse a VEVENT component into a CalendarEvent."""
        dtstart = vevent.get("dtstart")
        dtend = vevent.get("dtend")
        duration = vevent.get("duration")
        raw_start = dtstart.dt if dtstart else None
        if raw_start is None:
            raise ValueError(f"Event '{_text(vevent, 'uid')}' has no DTSTART")
        all_day = isinstance(raw_start, date_type) and not isinstance(raw_start, datetime)
        ev_start = _as_datetime(raw_start)
        if dtend:
            ev_end = _as_datetime(dtend.dt)
        elif duration:
            ev_end = ev_start + duration.dt
        elif all_day:
            # RFC 5545: a DATE start with no end lasts one day
            ev_end = ev_start + timedelta(days=1)
        else:
            ev_end = ev_start

        status = _text(vevent, "X-PLANNER-STATUS") or _text(vevent, "status").lower()
        changes = json.loads(_text(vevent, "X-PLANNER-TIME-CHANGES", "[]"))
        recurrence = _text(vevent, "X-PLANNER-RECURRENCE")

        return CalendarEvent(
            id=_text(vevent, "uid"),
            owner_id=_text(vevent, "X-PLANNER-OWNER", self._name),
            title=_text(vevent, "summary", "(No title)"),
            start=ev_start,
            end=ev_end,
            type=EventType.parse(_text(vevent, "X-PLANNER-TYPE")),
            status=EventStatus.parse(status),
            timezone=_text(vevent, "X-PLANNER-TIMEZONE", "UTC"),
            all_day=all_day,
            resource_id=_text(vevent, "X-PLANNER-RESOURCE") or None,
            property_address=_text(vevent, "location"),
            notes=_text(vevent, "description"),
            recurrence=RecurrenceRule.from_dict(json.loads(recurrence)) if recurrence else None,
            version=int(_text(vevent, "X-PLANNER-VERSION", "1")),
            time_changes=tuple(TimeChangeRecord.from_dict(c) for c in changes),
            **{attr: _text(vevent, prop) for attr, prop in _TEXT_PROPS.items()},
        )

    def _write_vevent(self, vevent: Any, event: CalendarEvent) -> None:
        """Copy every stored field of ``event`` onto ``vevent``."""
        for name in ("summary", "dtstart", "dtend", "location", "description", "status"):
            vevent.pop(name, None)
        for name in list(vevent.keys()):
            if name.upper().startswith("X-PLANNER-"):
                vevent.pop(name)

        vevent.add("summary", event.title)
        if event.all_day:
            vevent.add("dtstart", event.start.date())
            vevent.add("dtend", event.end.date())
        else:
            vevent.add("dtstart", event.start)
            vevent.add("dtend", event.end)
        if event.property_address:
            vevent.add("location", event.property_address)
        if event.notes:
            vevent.add("description", event.notes)
        vevent.add("status", "CANCELLED" if event.status is EventStatus.CANCELLED else "CONFIRMED")

        vevent.add("X-PLANNER-OWNER", event.owner_id)
        vevent.add("X-PLANNER-TYPE", event.type.value)
        vevent.add("X-PLANNER-STATUS", event.status.value)
        vevent.add("X-PLANNER-VERSION", str(event.version))
        vevent.add("X-PLANNER-TIMEZONE", event.timezone)
        vevent.add("X-PLANNER-TIME-CHANGES", json.dumps([c.to_dict() for c in event.time_changes]))
        if event.resource_id:
            vevent.add("X-PLANNER-RESOURCE", event.resource_id)
        if event.recurrence:
            vevent.add("X-PLANNER-RECURRENCE", json.dumps(event.recurrence.to_dict()))
        for attr, prop in _TEXT_PROPS.items():
            value = getattr(event, attr)
            if value:
                vevent.add(prop, value)

    def _to_ical(self, event: CalendarEvent) -> str:
        from icalendar import Calendar
        from icalendar import Event as VEvent

        vcal = Calendar()
        vcal.add("prodid", PRODID)
        vcal.add("version", "2.0")
        vevent = VEvent()
        vevent.add("uid", event.id)
        self._write_vevent(vevent, event)
        vcal.add_component(vevent)
        return vcal.to_ical().decode("utf-8")

    def _load(self, event_id: str) -> tuple[Any, Any]:
        cal = self._get_calendar()
        try:
            event_obj = cal.event_by_uid(event_id)
        except Exception as e:
            raise EventNotFoundError(f"Event not found: {event_id}") from e
        vevents = event_obj.icalendar_instance.walk("VEVENT")
        if not vevents:
            raise EventNotFoundError(f"Event not found: {event_id}")
        return event_obj, vevents[0]

    def _save(self, event_obj: Any, vevent: Any, event: CalendarEvent) -> CalendarEvent:
        self._write_vevent(vevent, event)
        event_obj.save()
        return event

    # -- sync operations ----------------------------------------------------

    def _fetch_events_sync(self, owner_id: str) -> list[CalendarEvent]:
        cal = self._get_calendar()
        events = []
        for event_obj in cal.events():
            for vevent in event_obj.icalendar_instance.walk("VEVENT"):
                try:
                    event = self._parse_vevent(vevent)
                except ValueError as e:
                    logger.warning("Skipping unreadable CalDAV event in '%s': %s", self._name, e)
                    continue
                if event.owner_id == owner_id:
                    events.append(event)

        # Sort chronologically
        events.sort(key=lambda e: e.start)
        return events

    def _get_event_sync(self, event_id: str) -> CalendarEvent:
        _, vevent = self._load(event_id)
        return self._parse_vevent(vevent)

    def _create_event_sync(self, owner_id: str, data: NewEvent) -> CalendarEvent:
        cal = self._get_calendar()
        event = CalendarEvent(id=str(uuid.uuid4()), owner_id=owner_id, **data.as_fields())
        cal.save_event(self._to_ical(event))
        logger.info("CalDAV event created: %s in '%s'", event.title, self._name)
        return event

    def _reschedule_event_sync(
        self,
        event_id: str,
        new_start: datetime,
        new_end: datetime,
        reason: str | None,
        expected_version: int | None,
    ) -> CalendarEvent:
        event_obj, vevent = self._load(event_id)
        current = self._parse_vevent(vevent)
        check_version(current, expected_version)
        updated = self._save(event_obj, vevent, apply_time_change(current, new_start, new_end, reason))
        logger.info("CalDAV event rescheduled: %s in '%s'", event_id, self._name)
        return updated

    def _set_status_sync(self, event_id: str, status: EventStatus, reason: str | None = None) -> CalendarEvent:
        event_obj, vevent = self._load(event_id)
        current = self._parse_vevent(vevent)
        return self._save(event_obj, vevent, apply_status(current, status, reason))

    def _delete_event_sync(self, event_id: str) -> bool:
        cal = self._get_calendar()
        try:
            event_obj = cal.event_by_uid(event_id)
        except Exception as e:
            logger.warning("CalDAV event '%s' not found for delete: %s", event_id, e)
            return False
        event_obj.delete()
        return True

    # -- async API ----------------------------------------------------------

    async def fetch_events(self, owner_id: str) -> list[CalendarEvent]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._fetch_events_sync, owner_id)

    async def get_event(self, event_id: str) -> CalendarEvent:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._get_event_sync, event_id)

    async def create_event(self, owner_id: str, data: NewEvent) -> CalendarEvent:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._create_event_sync, owner_id, data)

    async def reschedule_event(
        self,
        event_id: str,
        new_start: datetime,
        new_end: datetime,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> CalendarEvent:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None, self._reschedule_event_sync, event_id, new_start, new_end, reason, expected_version
        )

    async def cancel_event(self, event_id: str, reason: str | None = None) -> CalendarEvent:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._set_status_sync, event_id, EventStatus.CANCELLED, reason)

    async def complete_event(self, event_id: str) -> CalendarEvent:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._set_status_sync, event_id, EventStatus.COMPLETED)

    async def delete_event(self, event_id: str) -> bool:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._delete_event_sync, event_id)
