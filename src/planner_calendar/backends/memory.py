"""In-process event store.

Used for the ``memory`` account type and as the reference implementation of
the store contract. Every mutation swaps a whole event under one lock, so the
start/end update and its audit record land together.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Iterable

from .base import (
    CalendarEvent,
    EventNotFoundError,
    EventStatus,
    NewEvent,
    apply_status,
    apply_time_change,
    check_version,
)

logger = logging.getLogger("planner-calendar")


class MemoryBackend:
    """Event store keeping everything in a dict."""

    def __init__(self, account_name: str, config: dict[str, Any] | None = None,
                 events: Iterable[CalendarEvent] = ()):
        self._name = account_name
        self._config = config or {}
        self._events: dict[str, CalendarEvent] = {e.id: e for e in events}
        self._lock = asyncio.Lock()

    def _get(self, event_id: str) -> CalendarEvent:
        try:
            return self._events[event_id]
        except KeyError:
            raise EventNotFoundError(f"Event not found: {event_id}") from None

    async def fetch_events(self, owner_id: str) -> list[CalendarEvent]:
        events = [e for e in self._events.values() if e.owner_id == owner_id]
        events.sort(key=lambda e: e.start)
        return events

    async def get_event(self, event_id: str) -> CalendarEvent:
        return self._get(event_id)

    async def create_event(self, owner_id: str, data: NewEvent) -> CalendarEvent:
        event = CalendarEvent(id=str(uuid.uuid4()), owner_id=owner_id, **data.as_fields())
        async with self._lock:
            self._events[event.id] = event
        logger.info("Memory event created: %s in '%s'", event.title, self._name)
        return event

    async def reschedule_event(
        self,
        event_id: str,
        new_start: datetime,
        new_end: datetime,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> CalendarEvent:
        async with self._lock:
            current = self._get(event_id)
            check_version(current, expected_version)
            updated = apply_time_change(current, new_start, new_end, reason)
            self._events[event_id] = updated
        logger.info("Memory event rescheduled: %s -> %s", event_id, new_start.isoformat())
        return updated

    async def cancel_event(self, event_id: str, reason: str | None = None) -> CalendarEvent:
        async with self._lock:
            updated = apply_status(self._get(event_id), EventStatus.CANCELLED, reason)
            self._events[event_id] = updated
        return updated

    async def complete_event(self, event_id: str) -> CalendarEvent:
        async with self._lock:
            updated = apply_status(self._get(event_id), EventStatus.COMPLETED)
            self._events[event_id] = updated
        return updated

    async def delete_event(self, event_id: str) -> bool:
        async with self._lock:
            return self._events.pop(event_id, None) is not None

