"""Recurring bookings: rule model and expansion into instances."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, time
from itertools import islice
from typing import TYPE_CHECKING, Any, Iterable

from dateutil import rrule

from .backends.base import wall_clock

if TYPE_CHECKING:
    from .backends.base import CalendarEvent

VALID_FREQUENCIES = {"daily", "weekly", "monthly", "yearly"}
VALID_END_TYPES = {"never", "after", "on"}

DEFAULT_AFTER_OCCURRENCES = 100
MAX_OCCURRENCES = 365

_FREQ = {
    "daily": rrule.DAILY,
    "weekly": rrule.WEEKLY,
    "monthly": rrule.MONTHLY,
    "yearly": rrule.YEARLY,
}
_DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
_UNITS = {"daily": "day", "weekly": "week", "monthly": "month", "yearly": "year"}


@dataclass(frozen=True)
class RecurrenceRule:
    """How a booking repeats.

    ``days_of_week`` uses 0=Sunday .. 6=Saturday and only applies to weekly rules.
    """

    frequency: str = "weekly"
    interval: int = 1
    end_type: str = "never"  # never | after | on
    end_after_occurrences: int | None = None
    end_date: date | None = None
    days_of_week: tuple[int, ...] = ()

    def __post_init__(self):
        if self.frequency not in VALID_FREQUENCIES:
            raise ValueError(f"Unknown recurrence frequency '{self.frequency}'")
        if self.end_type not in VALID_END_TYPES:
            raise ValueError(f"Unknown recurrence end type '{self.end_type}'")
        if self.interval < 1:
            raise ValueError("Recurrence interval must be at least 1")
        if any(d < 0 or d > 6 for d in self.days_of_week):
            raise ValueError("days_of_week entries must be between 0 (Sunday) and 6 (Saturday)")
        object.__setattr__(self, "days_of_week", tuple(sorted(set(self.days_of_week))))

    def to_dict(self) -> dict[str, Any]:
        return {
            "frequency": self.frequency,
            "interval": self.interval,
            "end_type": self.end_type,
            "end_after_occurrences": self.end_after_occurrences,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "days_of_week": list(self.days_of_week),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RecurrenceRule | None:
        if not data:
            return None
        end_date = data.get("end_date")
        return cls(
            frequency=data.get("frequency", "weekly"),
            interval=int(data.get("interval", 1)),
            end_type=data.get("end_type", "never"),
            end_after_occurrences=data.get("end_after_occurrences"),
            end_date=date.fromisoformat(end_date) if end_date else None,
            days_of_week=tuple(data.get("days_of_week") or ()),
        )


def _occurrences(rule: RecurrenceRule, dtstart: datetime) -> rrule.rrule:
    kwargs: dict[str, Any] = {
        "dtstart": dtstart,
        "interval": rule.interval,
        "wkst": rrule.SU,
    }
    if rule.end_type == "after":
        kwargs["count"] = rule.end_after_occurrences or DEFAULT_AFTER_OCCURRENCES
    elif rule.end_type == "on" and rule.end_date:
        kwargs["until"] = datetime.combine(rule.end_date, time.max)
    if rule.frequency == "weekly" and rule.days_of_week:
        # dateutil counts Monday as 0
        kwargs["byweekday"] = [(d - 1) % 7 for d in rule.days_of_week]
    return rrule.rrule(_FREQ[rule.frequency], **kwargs)


def expand_event(event: CalendarEvent, range_start: datetime, range_end: datetime) -> list[CalendarEvent]:
    """Return the instances of ``event`` that overlap [range_start, range_end).

    Non-recurring events come back unchanged when they overlap the range.
    """
    range_start, range_end = wall_clock(range_start), wall_clock(range_end)
    if event.recurrence is None:
        if event.start < range_end and range_start < event.end:
            return [event]
        return []

    duration = event.end - event.start
    instances = []
    for occurrence in islice(_occurrences(event.recurrence, event.start), MAX_OCCURRENCES):
        if occurrence >= range_end:
            break
        end = occurrence + duration
        if end <= range_start:
            continue
        instances.append(replace(
            event,
            id=f"{event.id}_{occurrence.date().isoformat()}",
            start=occurrence,
            end=end,
            recurrence_id=event.id,
        ))
    return instances


def expand_events(
    events: Iterable[CalendarEvent], range_start: datetime, range_end: datetime
) -> list[CalendarEvent]:
    expanded: list[CalendarEvent] = []
    for event in events:
        expanded.extend(expand_event(event, range_start, range_end))
    expanded.sort(key=lambda e: e.start)
    return expanded


def describe(rule: RecurrenceRule) -> str:
    """Human-readable summary, e.g. "Repeats every 2 weeks on Mon, Wed"."""
    unit = _UNITS[rule.frequency]
    if rule.interval == 1:
        text = f"Repeats every {unit}"
    else:
        text = f"Repeats every {rule.interval} {unit}s"
    if rule.frequency == "weekly" and rule.days_of_week:
        text += " on " + ", ".join(_DAY_NAMES[d] for d in rule.days_of_week)
    if rule.end_type == "after" and rule.end_after_occurrences:
        text += f", {rule.end_after_occurrences} times"
    elif rule.end_type == "on" and rule.end_date:
        text += f" until {rule.end_date.isoformat()}"
    return text
