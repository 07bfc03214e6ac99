"""Month/week/day projection of the planner and gesture translation.

The view holds no persisted state. It turns gestures into three outward
intents: a date click, an event click and a proposed time change. A view
built without the time-change callback is read-only: drag, drop and resize
produce nothing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable

from dateutil.relativedelta import relativedelta

from .backends.base import EVENT_TYPE_CONFIG, CalendarEvent, wall_clock
from .identity import Permissions
from .query import VIEWS, events_in_range, visible_range

SNAP_MINUTES = 5
MIN_DURATION_MINUTES = 15

DateClicked = Callable[[date], Any]
EventClicked = Callable[[CalendarEvent], Any]
TimeProposed = Callable[[str, datetime, datetime], Any]


@dataclass
class DayCell:
    day: date
    in_month: bool
    events: list[CalendarEvent] = field(default_factory=list)


def snap(value: datetime, minutes: int = SNAP_MINUTES) -> datetime:
    """Round to the nearest ``minutes`` boundary."""
    snapped = round(value.minute / minutes) * minutes
    return value.replace(minute=0, second=0, microsecond=0) + timedelta(minutes=snapped)


class CalendarView:
    def __init__(
        self,
        events: Iterable[CalendarEvent],
        view: str = "month",
        current: date | None = None,
        on_date_clicked: DateClicked | None = None,
        on_event_clicked: EventClicked | None = None,
        on_event_time_proposed: TimeProposed | None = None,
        snap_minutes: int = SNAP_MINUTES,
        min_duration_minutes: int = MIN_DURATION_MINUTES,
    ):
        if view not in VIEWS:
            raise ValueError(f"Unknown view '{view}'. Must be one of: {VIEWS}")
        self.events = list(events)
        self.view = view
        self.current = current or date.today()
        self._on_date_clicked = on_date_clicked
        self._on_event_clicked = on_event_clicked
        self._on_event_time_proposed = on_event_time_proposed
        self._snap = snap_minutes
        self._min_duration = timedelta(minutes=min_duration_minutes)

    @classmethod
    def for_permissions(
        cls,
        events: Iterable[CalendarEvent],
        permissions: Permissions,
        on_date_clicked: DateClicked | None = None,
        on_event_clicked: EventClicked | None = None,
        on_event_time_proposed: TimeProposed | None = None,
        **kwargs: Any,
    ) -> CalendarView:
        """Wire only the callbacks the account is allowed to use."""
        if not permissions.can_manage_bookings:
            on_date_clicked = None
            on_event_time_proposed = None
        return cls(
            events,
            on_date_clicked=on_date_clicked,
            on_event_clicked=on_event_clicked,
            on_event_time_proposed=on_event_time_proposed,
            **kwargs,
        )

    @property
    def editable(self) -> bool:
        return self._on_event_time_proposed is not None

    @property
    def can_create(self) -> bool:
        return self._on_date_clicked is not None

    # -- projection ---------------------------------------------------------

    def visible_range(self) -> tuple[datetime, datetime]:
        return visible_range(self.view, self.current)

    def visible_events(self) -> list[CalendarEvent]:
        start, end = self.visible_range()
        return events_in_range(self.events, start, end)

    def day_events(self, day: date, events: list[CalendarEvent] | None = None) -> list[CalendarEvent]:
        pool = self.visible_events() if events is None else events
        return [e for e in pool if e.start.date() == day]

    def all_day_events(self, day: date) -> list[CalendarEvent]:
        return [e for e in self.day_events(day) if e.all_day]

    def events_starting_in_hour(self, day: date, hour: int) -> list[CalendarEvent]:
        return [e for e in self.day_events(day) if not e.all_day and e.start.hour == hour]

    def month_grid(self) -> list[list[DayCell]]:
        """Weeks (Sunday first) covering the current month."""
        start, end = visible_range("month", self.current)
        pool = events_in_range(self.events, start, end)
        weeks: list[list[DayCell]] = []
        day = start.date()
        while day < end.date():
            week = []
            for _ in range(7):
                week.append(DayCell(day, day.month == self.current.month, self.day_events(day, pool)))
                day += timedelta(days=1)
            weeks.append(week)
        return weeks

    def title(self) -> str:
        if self.view == "month":
            return self.current.strftime("%B %Y")
        if self.view == "week":
            start, end = self.visible_range()
            last = (end - timedelta(days=1)).date()
            return f"{start:%b} {start.day} – {last.day}, {last.year}"
        return f"{self.current:%A, %B} {self.current.day}, {self.current.year}"

    @staticmethod
    def legend() -> list[dict[str, str]]:
        return [{"type": t.value, **cfg} for t, cfg in EVENT_TYPE_CONFIG.items()]

    # -- navigation ---------------------------------------------------------

    def navigate(self, step: int) -> date:
        if self.view == "month":
            self.current = self.current + relativedelta(months=step)
        elif self.view == "week":
            self.current = self.current + timedelta(weeks=step)
        else:
            self.current = self.current + timedelta(days=step)
        return self.current

    def today(self) -> date:
        self.current = date.today()
        return self.current

    # -- intents ------------------------------------------------------------

    def _find(self, event_id: str) -> CalendarEvent | None:
        for event in self.visible_events():
            if event.id == event_id:
                return event
        for event in self.events:
            if event.id == event_id:
                return event
        return None

    def click_date(self, day: date) -> bool:
        if self._on_date_clicked is None:
            return False
        self._on_date_clicked(day)
        return True

    def click_event(self, event_id: str) -> bool:
        event = self._find(event_id)
        if event is None or self._on_event_clicked is None:
            return False
        self._on_event_clicked(event)
        return True

    def _series(self, event: CalendarEvent) -> CalendarEvent | None:
        for candidate in self.events:
            if candidate.id == event.source_id:
                return candidate
        return None

    def _propose(
        self, event: CalendarEvent, new_start: datetime, new_end: datetime
    ) -> tuple[str, datetime, datetime] | None:
        """Send the proposal, or return None when the times do not change.

        A gesture on a recurring instance shifts the whole series by the
        same amount the instance moved.
        """
        if new_start == event.start and new_end == event.end:
            return None
        target = event
        if event.recurrence_id is not None:
            target = self._series(event)
            if target is None:
                return None
            new_start = target.start + (new_start - event.start)
            new_end = target.end + (new_end - event.end)
        self._on_event_time_proposed(target.id, new_start, new_end)
        return target.id, new_start, new_end

    def drop_on_day(self, event_id: str, day: date) -> tuple[str, datetime, datetime] | None:
        """Month view drop: new date, same time of day and duration."""
        if not self.editable:
            return None
        event = self._find(event_id)
        if event is None:
            return None
        new_start = datetime.combine(day, event.start.time())
        return self._propose(event, new_start, new_start + (event.end - event.start))

    def drop_on_slot(
        self, event_id: str, day: date, hour: int, minute: int = 0
    ) -> tuple[str, datetime, datetime] | None:
        """Week/day view drop onto a time slot, keeping the duration."""
        if not self.editable:
            return None
        event = self._find(event_id)
        if event is None:
            return None
        new_start = datetime.combine(day, event.start.time()).replace(
            hour=hour, minute=minute, second=0, microsecond=0
        )
        return self._propose(event, new_start, new_start + (event.end - event.start))

    def resize(self, event_id: str, new_end: datetime) -> tuple[str, datetime, datetime] | None:
        """Drag the bottom edge (or right edge for all-day events in month view)."""
        if not self.editable:
            return None
        event = self._find(event_id)
        if event is None:
            return None
        new_end = wall_clock(new_end)

        if event.all_day:
            days = max(1, round((new_end - event.start) / timedelta(days=1)))
            end = event.start + timedelta(days=days)
        else:
            end = snap(new_end, self._snap)
            min_end = snap(event.start + self._min_duration, self._snap)
            if end < min_end:
                end = min_end

        if end == event.end:
            return None
        return self._propose(event, event.start, end)
