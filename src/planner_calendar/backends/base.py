"""Base types and protocol for planner event stores."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..recurrence import RecurrenceRule


class EventType(str, Enum):
    SHOWING = "showing"
    MOVE_IN = "move_in"
    INSPECTION = "inspection"
    MAINTENANCE = "maintenance"
    MEETING = "meeting"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str | None) -> EventType:
        """Map a raw store value onto the closed set. Unknown values become OTHER."""
        if not value:
            return cls.SHOWING
        key = str(value).strip().lower().replace("-", "_")
        return _TYPE_ALIASES.get(key, cls.OTHER)


_TYPE_ALIASES = {
    "tour": EventType.SHOWING,
    "showing": EventType.SHOWING,
    "move_in": EventType.MOVE_IN,
    "inspection": EventType.INSPECTION,
    "maintenance": EventType.MAINTENANCE,
    "meeting": EventType.MEETING,
    "other": EventType.OTHER,
}

EVENT_TYPE_CONFIG: dict[EventType, dict[str, str]] = {
    EventType.SHOWING: {"label": "Showing", "color": "#3B82F6"},
    EventType.MOVE_IN: {"label": "Move-in", "color": "#10B981"},
    EventType.INSPECTION: {"label": "Inspection", "color": "#F59E0B"},
    EventType.MAINTENANCE: {"label": "Maintenance", "color": "#EF4444"},
    EventType.MEETING: {"label": "Meeting", "color": "#8B5CF6"},
    EventType.OTHER: {"label": "Other", "color": "#6B7280"},
}


class EventStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: str | None) -> EventStatus:
        if not value:
            return cls.SCHEDULED
        key = str(value).strip().lower()
        if key in ("completed", "no_show"):
            return cls.COMPLETED
        if key == "cancelled":
            return cls.CANCELLED
        return cls.SCHEDULED

    @property
    def is_terminal(self) -> bool:
        return self is not EventStatus.SCHEDULED


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class StoreError(Exception):
    """An event store call failed."""


class EventNotFoundError(StoreError):
    pass


class StaleEventError(StoreError):
    """The stored event changed since the caller last read it."""


class ImmutableEventError(StoreError):
    """Completed and cancelled events accept no further changes."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def wall_clock(value: datetime) -> datetime:
    """Drop tzinfo, keeping the local time as written.

    Booking times are naive wall-clock values; the zone lives in the
    event's ``timezone`` label.
    """
    if value.tzinfo is not None:
        return value.replace(tzinfo=None)
    return value


@dataclass(frozen=True)
class TimeChangeRecord:
    """One reschedule: before/after times and the optional reason."""

    original_start: datetime
    original_end: datetime
    new_start: datetime
    new_end: datetime
    reason: str | None = None
    changed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, str | None]:
        return {
            "original_start": self.original_start.isoformat(),
            "original_end": self.original_end.isoformat(),
            "new_start": self.new_start.isoformat(),
            "new_end": self.new_end.isoformat(),
            "reason": self.reason,
            "changed_at": self.changed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> TimeChangeRecord:
        return cls(
            original_start=datetime.fromisoformat(data["original_start"]),
            original_end=datetime.fromisoformat(data["original_end"]),
            new_start=datetime.fromisoformat(data["new_start"]),
            new_end=datetime.fromisoformat(data["new_end"]),
            reason=data.get("reason"),
            changed_at=datetime.fromisoformat(data["changed_at"]),
        )


@dataclass(frozen=True)
class CalendarEvent:
    """A booking on the planner.

    Instances are never mutated in place; stores hand out replacements built
    with ``dataclasses.replace``.
    """

    id: str
    owner_id: str
    title: str
    start: datetime
    end: datetime
    type: EventType = EventType.SHOWING
    status: EventStatus = EventStatus.SCHEDULED
    timezone: str = "UTC"  # display only
    all_day: bool = False
    resource_id: str | None = None  # location or lead the booking occupies
    lead_name: str = ""
    lead_email: str = ""
    lead_phone: str = ""
    property_address: str = ""
    community: str = ""
    notes: str = ""
    recurrence: RecurrenceRule | None = None
    recurrence_id: str | None = None  # set on expanded instances
    version: int = 1
    time_changes: tuple[TimeChangeRecord, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "start", wall_clock(self.start))
        object.__setattr__(self, "end", wall_clock(self.end))
        if self.end <= self.start:
            raise ValueError(
                f"Event '{self.id}': end ({self.end.isoformat()}) must be after "
                f"start ({self.start.isoformat()})"
            )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def source_id(self) -> str:
        """Id of the stored event; recurring instances point at their series."""
        return self.recurrence_id or self.id


@dataclass
class NewEvent:
    """Payload for creating an event."""

    title: str
    start: datetime
    end: datetime
    type: EventType = EventType.SHOWING
    timezone: str = "UTC"
    all_day: bool = False
    resource_id: str | None = None
    lead_name: str = ""
    lead_email: str = ""
    lead_phone: str = ""
    property_address: str = ""
    community: str = ""
    notes: str = ""
    recurrence: RecurrenceRule | None = None

    def __post_init__(self):
        if not self.title or not self.title.strip():
            raise ValueError("Event title is required")
        self.start = wall_clock(self.start)
        self.end = wall_clock(self.end)
        if self.end <= self.start:
            raise ValueError("Event end must be after start")
        self.type = EventType(self.type)

    def as_fields(self) -> dict:
        """Keyword arguments for building a CalendarEvent from this payload."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


@runtime_checkable
class EventStore(Protocol):
    """Protocol that all event stores must satisfy."""

    async def fetch_events(self, owner_id: str) -> list[CalendarEvent]: ...

    async def get_event(self, event_id: str) -> CalendarEvent: ...

    async def create_event(self, owner_id: str, data: NewEvent) -> CalendarEvent: ...

    async def reschedule_event(
        self,
        event_id: str,
        new_start: datetime,
        new_end: datetime,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> CalendarEvent: ...

    async def cancel_event(self, event_id: str, reason: str | None = None) -> CalendarEvent: ...

    async def complete_event(self, event_id: str) -> CalendarEvent: ...

    async def delete_event(self, event_id: str) -> bool: ...


# ---------------------------------------------------------------------------
# Mutation helpers shared by the stores
# ---------------------------------------------------------------------------

def check_version(event: CalendarEvent, expected_version: int | None) -> None:
    if expected_version is not None and event.version != expected_version:
        raise StaleEventError(
            f"Event '{event.id}' is at version {event.version}, expected {expected_version}"
        )


def apply_time_change(
    event: CalendarEvent,
    new_start: datetime,
    new_end: datetime,
    reason: str | None = None,
) -> CalendarEvent:
    """Return ``event`` moved to the new times with one audit record appended."""
    if event.is_terminal:
        raise ImmutableEventError(f"Event '{event.id}' is {event.status.value}")
    new_start, new_end = wall_clock(new_start), wall_clock(new_end)
    record = TimeChangeRecord(
        original_start=event.start,
        original_end=event.end,
        new_start=new_start,
        new_end=new_end,
        reason=reason or None,
    )
    return replace(
        event,
        start=new_start,
        end=new_end,
        version=event.version + 1,
        time_changes=event.time_changes + (record,),
    )


def apply_status(event: CalendarEvent, status: EventStatus, reason: str | None = None) -> CalendarEvent:
    if event.is_terminal:
        raise ImmutableEventError(f"Event '{event.id}' is already {event.status.value}")
    notes = event.notes
    if status is EventStatus.CANCELLED and reason:
        notes = f"Cancelled: {reason}"
    return replace(event, status=status, notes=notes, version=event.version + 1)
