"""Tests for the calendar projection and gesture handling."""

from datetime import date, datetime
from unittest.mock import MagicMock

from planner_calendar.backends.base import CalendarEvent, EventType
from planner_calendar.identity import Permissions
from planner_calendar.recurrence import RecurrenceRule
from planner_calendar.view import CalendarView, snap


def _make_event(
    id: str = "E",
    start: datetime | None = None,
    end: datetime | None = None,
    all_day: bool = False,
    recurrence: RecurrenceRule | None = None,
) -> CalendarEvent:
    return CalendarEvent(
        id=id,
        owner_id="acme",
        title=f"Showing {id}",
        start=start or datetime(2026, 10, 20, 9, 0),
        end=end or datetime(2026, 10, 20, 10, 0),
        all_day=all_day,
        recurrence=recurrence,
    )


def _editable_view(events, view="week", current=date(2026, 10, 19)):
    proposed = MagicMock()
    return CalendarView(events, view=view, current=current, on_event_time_proposed=proposed), proposed


class TestSnap:
    def test_rounds_down(self):
        assert snap(datetime(2026, 10, 20, 10, 7)) == datetime(2026, 10, 20, 10, 5)

    def test_rounds_up_across_hour(self):
        assert snap(datetime(2026, 10, 20, 10, 58)) == datetime(2026, 10, 20, 11, 0)

    def test_drops_seconds(self):
        assert snap(datetime(2026, 10, 20, 10, 10, 42)) == datetime(2026, 10, 20, 10, 10)


class TestReadOnly:
    def test_gestures_produce_nothing(self):
        clicked = MagicMock()
        proposed = MagicMock()
        view = CalendarView.for_permissions(
            [_make_event()],
            Permissions(can_manage_bookings=False),
            on_date_clicked=clicked,
            on_event_time_proposed=proposed,
            view="week",
            current=date(2026, 10, 19),
        )
        assert view.editable is False
        assert view.can_create is False
        assert view.drop_on_day("E", date(2026, 10, 21)) is None
        assert view.drop_on_slot("E", date(2026, 10, 21), 14) is None
        assert view.resize("E", datetime(2026, 10, 20, 11, 0)) is None
        assert view.click_date(date(2026, 10, 21)) is False
        proposed.assert_not_called()
        clicked.assert_not_called()

    def test_event_click_still_works(self):
        selected = MagicMock()
        view = CalendarView.for_permissions(
            [_make_event()], Permissions(), on_event_clicked=selected, view="week", current=date(2026, 10, 19),
        )
        assert view.click_event("E") is True
        selected.assert_called_once()

    def test_manager_gets_editable_view(self):
        view = CalendarView.for_permissions(
            [], Permissions(can_manage_bookings=True), on_event_time_proposed=MagicMock(),
        )
        assert view.editable is True


class TestGestures:
    def test_drop_on_day_keeps_time_and_duration(self):
        view, proposed = _editable_view([_make_event()], view="month")
        result = view.drop_on_day("E", date(2026, 10, 23))
        assert result == ("E", datetime(2026, 10, 23, 9, 0), datetime(2026, 10, 23, 10, 0))
        proposed.assert_called_once_with("E", datetime(2026, 10, 23, 9, 0), datetime(2026, 10, 23, 10, 0))

    def test_drop_on_slot_keeps_duration(self):
        event = _make_event(end=datetime(2026, 10, 20, 10, 30))
        view, proposed = _editable_view([event])
        result = view.drop_on_slot("E", date(2026, 10, 22), 14, 15)
        assert result == ("E", datetime(2026, 10, 22, 14, 15), datetime(2026, 10, 22, 15, 45))

    def test_drop_unknown_event(self):
        view, proposed = _editable_view([_make_event()])
        assert view.drop_on_slot("missing", date(2026, 10, 22), 14) is None
        proposed.assert_not_called()

    def test_resize_snaps_end(self):
        view, proposed = _editable_view([_make_event()])
        result = view.resize("E", datetime(2026, 10, 20, 11, 8))
        assert result == ("E", datetime(2026, 10, 20, 9, 0), datetime(2026, 10, 20, 11, 10))

    def test_resize_enforces_minimum_duration(self):
        view, _ = _editable_view([_make_event()])
        result = view.resize("E", datetime(2026, 10, 20, 9, 3))
        assert result == ("E", datetime(2026, 10, 20, 9, 0), datetime(2026, 10, 20, 9, 15))

    def test_resize_to_same_end_is_noop(self):
        view, proposed = _editable_view([_make_event()])
        assert view.resize("E", datetime(2026, 10, 20, 10, 1)) is None
        proposed.assert_not_called()

    def test_resize_all_day_in_whole_days(self):
        event = _make_event(start=datetime(2026, 10, 20), end=datetime(2026, 10, 21), all_day=True)
        view, _ = _editable_view([event], view="month")
        result = view.resize("E", datetime(2026, 10, 22, 20, 0))
        assert result == ("E", datetime(2026, 10, 20), datetime(2026, 10, 23))

    def test_recurring_instance_moves_series(self):
        rule = RecurrenceRule(frequency="daily", end_type="after", end_after_occurrences=5)
        event = _make_event(recurrence=rule)
        view, proposed = _editable_view([event])
        instance_id = "E_2026-10-21"
        result = view.drop_on_slot(instance_id, date(2026, 10, 21), 13)
        assert result[0] == "E"

    def test_recurring_instance_dropped_on_own_slot_is_noop(self):
        series = _make_event(
            "S", start=datetime(2026, 10, 6, 9, 0), end=datetime(2026, 10, 6, 10, 0),
            recurrence=RecurrenceRule(frequency="weekly"),
        )
        view, proposed = _editable_view([series], current=date(2026, 10, 20))
        assert view.drop_on_slot("S_2026-10-20", date(2026, 10, 20), 9) is None
        proposed.assert_not_called()

    def test_recurring_instance_shifts_series_by_delta(self):
        series = _make_event(
            "S", start=datetime(2026, 10, 6, 9, 0), end=datetime(2026, 10, 6, 10, 0),
            recurrence=RecurrenceRule(frequency="weekly"),
        )
        view, proposed = _editable_view([series], current=date(2026, 10, 20))
        result = view.drop_on_slot("S_2026-10-20", date(2026, 10, 21), 9)
        assert result == ("S", datetime(2026, 10, 7, 9, 0), datetime(2026, 10, 7, 10, 0))
        proposed.assert_called_once_with("S", datetime(2026, 10, 7, 9, 0), datetime(2026, 10, 7, 10, 0))

    def test_recurring_instance_resize_extends_series(self):
        series = _make_event(
            "S", start=datetime(2026, 10, 6, 9, 0), end=datetime(2026, 10, 6, 10, 0),
            recurrence=RecurrenceRule(frequency="weekly"),
        )
        view, _ = _editable_view([series], current=date(2026, 10, 20))
        result = view.resize("S_2026-10-20", datetime(2026, 10, 20, 10, 30))
        assert result == ("S", datetime(2026, 10, 6, 9, 0), datetime(2026, 10, 6, 10, 30))


class TestProjection:
    def test_week_title(self):
        view = CalendarView([], view="week", current=date(2026, 10, 19))
        assert view.title() == "Oct 18 – 24, 2026"

    def test_day_title(self):
        view = CalendarView([], view="day", current=date(2026, 10, 19))
        assert view.title() == "Monday, October 19, 2026"

    def test_month_title(self):
        view = CalendarView([], view="month", current=date(2026, 10, 19))
        assert view.title() == "October 2026"

    def test_month_grid_covers_whole_weeks(self):
        view = CalendarView([_make_event()], view="month", current=date(2026, 10, 19))
        grid = view.month_grid()
        assert len(grid) == 5
        assert all(len(week) == 7 for week in grid)
        assert grid[0][0].day == date(2026, 9, 27)
        assert grid[0][0].in_month is False
        assert grid[-1][-1].day == date(2026, 10, 31)
        cell = next(c for week in grid for c in week if c.day == date(2026, 10, 20))
        assert [e.id for e in cell.events] == ["E"]

    def test_visible_events_limited_to_window(self):
        inside = _make_event("in")
        outside = _make_event("out", datetime(2026, 11, 20, 9, 0), datetime(2026, 11, 20, 10, 0))
        view = CalendarView([inside, outside], view="week", current=date(2026, 10, 19))
        assert [e.id for e in view.visible_events()] == ["in"]

    def test_hour_slots(self):
        events = [
            _make_event("a"),
            _make_event("b", datetime(2026, 10, 20, 14, 0), datetime(2026, 10, 20, 15, 0)),
            _make_event("c", datetime(2026, 10, 20), datetime(2026, 10, 21), all_day=True),
        ]
        view = CalendarView(events, view="day", current=date(2026, 10, 20))
        assert [e.id for e in view.events_starting_in_hour(date(2026, 10, 20), 9)] == ["a"]
        assert [e.id for e in view.all_day_events(date(2026, 10, 20))] == ["c"]

    def test_navigate(self):
        view = CalendarView([], view="month", current=date(2026, 1, 31))
        assert view.navigate(1) == date(2026, 2, 28)
        week = CalendarView([], view="week", current=date(2026, 10, 19))
        assert week.navigate(-1) == date(2026, 10, 12)

    def test_legend_lists_every_type(self):
        legend = CalendarView.legend()
        assert [entry["type"] for entry in legend] == [t.value for t in EventType]
        assert all("color" in entry and "label" in entry for entry in legend)
