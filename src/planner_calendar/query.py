"""Loading and filtering the events shown on the planner."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Union

from .backends.base import CalendarEvent, EventStore, EventType
from .identity import IdentityProvider
from .recurrence import expand_events

logger = logging.getLogger("planner-calendar")

ALL_TYPES = "all"
VIEWS = ("month", "week", "day")


@dataclass(frozen=True)
class Loaded:
    owner_id: str
    events: tuple[CalendarEvent, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.events


@dataclass(frozen=True)
class LoadFailed:
    """Events could not be loaded. Rendered as an error, never as empty."""

    message: str
    owner_id: str | None = None


LoadResult = Union[Loaded, LoadFailed]


class EventQuery:
    """Read side of the planner: fetches an owner's events from the store."""

    def __init__(self, store: EventStore, identity: IdentityProvider | None = None):
        self._store = store
        self._identity = identity
        self._last_owner: str | None = None
        self.result: LoadResult | None = None

    async def _resolve_owner(self, owner_id: str | None) -> str | None:
        if owner_id:
            return owner_id
        if self._identity is None:
            return None
        identity = await self._identity.resolve()
        return identity.owner_id if identity else None

    async def load(self, owner_id: str | None = None) -> LoadResult:
        try:
            owner = await self._resolve_owner(owner_id)
        except Exception as e:
            logger.warning("Failed to resolve account: %s", e)
            owner = None
        if not owner:
            self.result = LoadFailed("Unable to load calendar: account could not be resolved")
            return self.result

        self._last_owner = owner
        try:
            events = await self._store.fetch_events(owner)
        except Exception as e:
            logger.warning("Failed to fetch events for '%s': %s", owner, e)
            self.result = LoadFailed(f"Unable to load calendar: {e}", owner_id=owner)
            return self.result

        self.result = Loaded(owner, tuple(sorted(events, key=lambda e: e.start)))
        return self.result

    async def retry(self) -> LoadResult:
        """Re-run the last load, e.g. from the error state's retry action."""
        return await self.load(self._last_owner)

    @property
    def events(self) -> tuple[CalendarEvent, ...]:
        if isinstance(self.result, Loaded):
            return self.result.events
        return ()

    def find(self, event_id: str) -> CalendarEvent | None:
        for event in self.events:
            if event.id == event_id:
                return event
        return None


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------

def parse_type_filter(value: str | EventType | None) -> EventType | None:
    """``None``/"all" means no type filter."""
    if value is None or value == "" or value == ALL_TYPES:
        return None
    if isinstance(value, EventType):
        return value
    try:
        return EventType(value)
    except ValueError:
        raise ValueError(
            f"Unknown event type '{value}'. Must be 'all' or one of: {[t.value for t in EventType]}"
        ) from None


def matches_search(event: CalendarEvent, search: str) -> bool:
    if not search:
        return True
    needle = search.lower()
    haystack = (event.title, event.lead_name, event.property_address, event.community)
    return any(needle in value.lower() for value in haystack if value)


def filter_events(
    events: Iterable[CalendarEvent],
    type_filter: str | EventType | None = ALL_TYPES,
    search: str = "",
) -> list[CalendarEvent]:
    wanted = parse_type_filter(type_filter)
    return [
        e for e in events
        if (wanted is None or e.type is wanted) and matches_search(e, search)
    ]


# ---------------------------------------------------------------------------
# Visible window
# ---------------------------------------------------------------------------

def start_of_week(day: date) -> date:
    """Weeks start on Sunday."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def visible_range(view: str, current: date | datetime) -> tuple[datetime, datetime]:
    """Half-open [start, end) window a view displays around ``current``."""
    if view not in VIEWS:
        raise ValueError(f"Unknown view '{view}'. Must be one of: {VIEWS}")
    if isinstance(current, datetime):
        current = current.date()

    if view == "month":
        first = current.replace(day=1)
        next_month = (first + timedelta(days=32)).replace(day=1)
        start = start_of_week(first)
        end = start_of_week(next_month - timedelta(days=1)) + timedelta(days=7)
    elif view == "week":
        start = start_of_week(current)
        end = start + timedelta(days=7)
    else:
        start = current
        end = current + timedelta(days=1)

    return datetime.combine(start, time.min), datetime.combine(end, time.min)


def events_in_range(events: Iterable[CalendarEvent], start: datetime, end: datetime) -> list[CalendarEvent]:
    """Events overlapping [start, end), with recurring series expanded."""
    return expand_events(events, start, end)
