"""Google Calendar API event store.

Booking fields live in the event's ``extendedProperties.private`` map. Google
treats ``status: cancelled`` as a deletion, so the planner status is kept
there too and the Google event itself stays confirmed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timedelta
from typing import Any

from dateutil.parser import parse as parse_dt

from .base import (
    CalendarEvent,
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

SCOPES = ["https://www.googleapis.com/auth/calendar"]

_TEXT_KEYS = ("lead_name", "lead_email", "lead_phone", "community")


class GoogleCalendarBackend:
    """Event store for Google Calendar via Google API."""

    def __init__(self, account_name: str, config: dict[str, Any]):
        self._name = account_name
        self._config = config
        self._service = None  # Lazy init
        self._calendar_id = config.get("calendar_id", "primary")

    def _get_service(self):
        """Lazy-initialize Google Calendar API service with auto-refresh."""
        if self._service is not None:
            return self._service

        from google.auth.transport.requests import Request
        from google.oauth2.credentials import Credentials
        from googleapiclient.discovery import build

        creds = None
        token_file = self._config.get("token_file", "/data/google_calendar_token.json")
        credentials_file = self._config["credentials_file"]

        # Load existing token
        if os.path.isfile(token_file):
            with open(token_file, "r") as f:
                token_data = json.load(f)
            creds = Credentials.from_authorized_user_info(token_data, SCOPES)

        # Refresh or obtain new credentials
        if not creds or not creds.valid:
            if creds and creds.expired and creds.refresh_token:
                creds.refresh(Request())
                # Persist refreshed token
                with open(token_file, "w") as f:
                    json.dump(json.loads(creds.to_json()), f)
                logger.info("Google token refreshed for '%s'", self._name)
            elif os.path.isfile(credentials_file):
                raise ValueError(
                    f"Account '{self._name}': Google token not found or expired. "
                    f"Run: planner-calendar --auth google --account {self._name}"
                )
            else:
                raise ValueError(
                    f"Account '{self._name}': credentials file not found: {credentials_file}"
                )

        self._service = build("calendar", "v3", credentials=creds)
        logger.info("Google Calendar connected: %s (calendar_id=%s)", self._name, self._calendar_id)
        return self._service

    # -- API item <-> CalendarEvent -----------------------------------------

    def _parse_item(self, item: dict[str, Any]) -> CalendarEvent:
        start_raw = item.get("start", {})
        end_raw = item.get("end", {})
        private = item.get("extendedProperties", {}).get("private", {})

        # All-day events use 'date', timed events use 'dateTime'
        all_day = "date" in start_raw and "dateTime" not in start_raw
        if all_day:
            ev_start = parse_dt(start_raw["date"])
            ev_end = parse_dt(end_raw["date"]) if "date" in end_raw else ev_start + timedelta(days=1)
        else:
            # keep the wall-clock time, the zone stays in `timeZone`
            ev_start = wall_clock(parse_dt(start_raw.get("dateTime", "")))
            ev_end = wall_clock(parse_dt(end_raw.get("dateTime", "")))

        recurrence = private.get("planner_recurrence")
        return CalendarEvent(
            id=item["id"],
            owner_id=private.get("planner_owner", self._name),
            title=item.get("summary", "(No title)"),
            start=ev_start,
            end=ev_end,
            type=EventType.parse(private.get("planner_type")),
            status=EventStatus.parse(private.get("planner_status")),
            timezone=start_raw.get("timeZone", "UTC"),
            all_day=all_day,
            resource_id=private.get("planner_resource") or None,
            property_address=item.get("location", ""),
            notes=item.get("description", ""),
            recurrence=RecurrenceRule.from_dict(json.loads(recurrence)) if recurrence else None,
            version=int(private.get("planner_version", "1")),
            time_changes=tuple(
                TimeChangeRecord.from_dict(c)
                for c in json.loads(private.get("planner_time_changes", "[]"))
            ),
            **{key: private.get(f"planner_{key}", "") for key in _TEXT_KEYS},
        )

    def _when(self, value: datetime, event: CalendarEvent) -> dict[str, str]:
        if event.all_day:
            return {"date": value.date().isoformat()}
        return {"dateTime": value.isoformat(), "timeZone": event.timezone}

    def _to_body(self, event: CalendarEvent, body: dict[str, Any] | None = None) -> dict[str, Any]:
        body = dict(body or {})
        body["summary"] = event.title
        body["start"] = self._when(event.start, event)
        body["end"] = self._when(event.end, event)
        body["location"] = event.property_address
        body["description"] = event.notes

        # Private property values are strings
        private = {
            "planner_owner": event.owner_id,
            "planner_type": event.type.value,
            "planner_status": event.status.value,
            "planner_version": str(event.version),
            "planner_time_changes": json.dumps([c.to_dict() for c in event.time_changes]),
        }
        if event.resource_id:
            private["planner_resource"] = event.resource_id
        if event.recurrence:
            private["planner_recurrence"] = json.dumps(event.recurrence.to_dict())
        for key in _TEXT_KEYS:
            if getattr(event, key):
                private[f"planner_{key}"] = getattr(event, key)
        body["extendedProperties"] = {"private": private}
        return body

    # -- sync operations ----------------------------------------------------

    def _fetch_events_sync(self, owner_id: str) -> list[CalendarEvent]:
        service = self._get_service()
        events = []
        page_token = None
        while True:
            result = (
                service.events()
                .list(
                    calendarId=self._calendar_id,
                    privateExtendedProperty=f"planner_owner={owner_id}",
                    maxResults=250,
                    pageToken=page_token,
                )
                .execute()
            )
            for item in result.get("items", []):
                try:
                    events.append(self._parse_item(item))
                except ValueError as e:
                    logger.warning("Skipping unreadable Google event in '%s': %s", self._name, e)
            page_token = result.get("nextPageToken")
            if not page_token:
                break
        events.sort(key=lambda e: e.start)
        return events

    def _get_item(self, event_id: str) -> dict[str, Any]:
        service = self._get_service()
        return service.events().get(calendarId=self._calendar_id, eventId=event_id).execute()

    def _update_item(self, item: dict[str, Any], event: CalendarEvent) -> CalendarEvent:
        service = self._get_service()
        result = (
            service.events()
            .update(calendarId=self._calendar_id, eventId=item["id"], body=self._to_body(event, item))
            .execute()
        )
        return self._parse_item(result)

    def _get_event_sync(self, event_id: str) -> CalendarEvent:
        return self._parse_item(self._get_item(event_id))

    def _create_event_sync(self, owner_id: str, data: NewEvent) -> CalendarEvent:
        service = self._get_service()
        # Google assigns the id; the placeholder never leaves this method
        draft = CalendarEvent(id="new", owner_id=owner_id, **data.as_fields())
        result = service.events().insert(calendarId=self._calendar_id, body=self._to_body(draft)).execute()
        logger.info("Google event created: %s in '%s'", draft.title, self._name)
        return self._parse_item(result)

    def _reschedule_event_sync(
        self,
        event_id: str,
        new_start: datetime,
        new_end: datetime,
        reason: str | None,
        expected_version: int | None,
    ) -> CalendarEvent:
        item = self._get_item(event_id)
        current = self._parse_item(item)
        check_version(current, expected_version)
        updated = self._update_item(item, apply_time_change(current, new_start, new_end, reason))
        logger.info("Google event rescheduled: %s in '%s'", event_id, self._name)
        return updated

    def _set_status_sync(self, event_id: str, status: EventStatus, reason: str | None = None) -> CalendarEvent:
        item = self._get_item(event_id)
        return self._update_item(item, apply_status(self._parse_item(item), status, reason))

    def _delete_event_sync(self, event_id: str) -> bool:
        service = self._get_service()
        service.events().delete(calendarId=self._calendar_id, eventId=event_id).execute()
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
