"""Tests for loading, filtering and recurrence expansion."""

from datetime import date, datetime
from unittest.mock import AsyncMock

import pytest

from planner_calendar.backends.base import CalendarEvent, EventType, StoreError
from planner_calendar.backends.memory import MemoryBackend
from planner_calendar.identity import StaticIdentityProvider
from planner_calendar.query import (
    EventQuery,
    Loaded,
    LoadFailed,
    events_in_range,
    filter_events,
    start_of_week,
    visible_range,
)
from planner_calendar.recurrence import RecurrenceRule, describe, expand_event


def _make_event(
    id: str = "E",
    start: datetime | None = None,
    end: datetime | None = None,
    type: EventType = EventType.SHOWING,
    owner_id: str = "acme",
    **kwargs,
) -> CalendarEvent:
    return CalendarEvent(
        id=id,
        owner_id=owner_id,
        title=f"Showing {id}",
        start=start or datetime(2024, 12, 18, 9, 0),
        end=end or datetime(2024, 12, 18, 10, 0),
        type=type,
        **kwargs,
    )


class TestLoad:
    async def test_loaded_sorted_by_start(self):
        store = MemoryBackend("acme", events=[
            _make_event("late", datetime(2024, 12, 18, 15, 0), datetime(2024, 12, 18, 16, 0)),
            _make_event("early"),
            _make_event("foreign", owner_id="other"),
        ])
        result = await EventQuery(store).load("acme")
        assert isinstance(result, Loaded)
        assert [e.id for e in result.events] == ["early", "late"]

    async def test_empty_is_not_failure(self):
        result = await EventQuery(MemoryBackend("acme")).load("acme")
        assert isinstance(result, Loaded)
        assert result.is_empty is True

    async def test_store_failure_is_distinct_from_empty(self):
        store = AsyncMock()
        store.fetch_events.side_effect = StoreError("timeout")
        query = EventQuery(store)
        result = await query.load("acme")
        assert isinstance(result, LoadFailed)
        assert "timeout" in result.message
        assert query.events == ()

    async def test_unresolved_identity_fails(self):
        identity = AsyncMock()
        identity.resolve.return_value = None
        result = await EventQuery(MemoryBackend("acme"), identity).load()
        assert isinstance(result, LoadFailed)

    async def test_identity_error_fails(self):
        identity = AsyncMock()
        identity.resolve.side_effect = RuntimeError("session expired")
        result = await EventQuery(MemoryBackend("acme"), identity).load()
        assert isinstance(result, LoadFailed)

    async def test_owner_from_identity(self):
        store = MemoryBackend("acme", events=[_make_event()])
        result = await EventQuery(store, StaticIdentityProvider("acme")).load()
        assert isinstance(result, Loaded)
        assert result.owner_id == "acme"

    async def test_retry_after_failure(self):
        store = AsyncMock()
        store.fetch_events.side_effect = [StoreError("down"), [_make_event()]]
        query = EventQuery(store)
        assert isinstance(await query.load("acme"), LoadFailed)
        result = await query.retry()
        assert isinstance(result, Loaded)
        assert query.find("E") is not None


class TestFilters:
    def test_type_filter(self):
        events = [_make_event("a"), _make_event("b", type=EventType.INSPECTION)]
        assert [e.id for e in filter_events(events, "inspection")] == ["b"]
        assert len(filter_events(events, "all")) == 2

    def test_unknown_type_filter(self):
        with pytest.raises(ValueError):
            filter_events([], "party")

    def test_search_matches_lead_and_property(self):
        events = [
            _make_event("a", lead_name="Dana Whitfield"),
            _make_event("b", property_address="12 Harbor Lane"),
            _make_event("c", community="Oak Ridge"),
        ]
        assert [e.id for e in filter_events(events, search="whitfield")] == ["a"]
        assert [e.id for e in filter_events(events, search="HARBOR")] == ["b"]
        assert [e.id for e in filter_events(events, search="oak")] == ["c"]


class TestVisibleRange:
    def test_start_of_week_is_sunday(self):
        assert start_of_week(date(2026, 10, 19)) == date(2026, 10, 18)
        assert start_of_week(date(2026, 10, 18)) == date(2026, 10, 18)

    def test_week(self):
        assert visible_range("week", date(2026, 10, 19)) == (
            datetime(2026, 10, 18), datetime(2026, 10, 25),
        )

    def test_day(self):
        assert visible_range("day", date(2026, 10, 19)) == (
            datetime(2026, 10, 19), datetime(2026, 10, 20),
        )

    def test_month_covers_whole_weeks(self):
        start, end = visible_range("month", date(2026, 10, 19))
        assert start == datetime(2026, 9, 27)
        assert end == datetime(2026, 11, 1)

    def test_unknown_view(self):
        with pytest.raises(ValueError):
            visible_range("year", date(2026, 10, 19))


class TestRecurrence:
    def test_weekly_on_days(self):
        rule = RecurrenceRule(frequency="weekly", days_of_week=(1, 3))  # Mon, Wed
        event = _make_event(start=datetime(2026, 10, 19, 9, 0), end=datetime(2026, 10, 19, 10, 0), recurrence=rule)
        instances = expand_event(event, datetime(2026, 10, 18), datetime(2026, 11, 1))
        assert [i.start.date() for i in instances] == [
            date(2026, 10, 19), date(2026, 10, 21), date(2026, 10, 26), date(2026, 10, 28),
        ]
        assert all(i.recurrence_id == "E" for i in instances)
        assert instances[0].id == "E_2026-10-19"
        assert instances[0].end - instances[0].start == event.end - event.start

    def test_after_count(self):
        rule = RecurrenceRule(frequency="daily", end_type="after", end_after_occurrences=3)
        event = _make_event(start=datetime(2026, 10, 19, 9, 0), end=datetime(2026, 10, 19, 10, 0), recurrence=rule)
        instances = expand_event(event, datetime(2026, 10, 1), datetime(2026, 12, 1))
        assert len(instances) == 3

    def test_until_date(self):
        rule = RecurrenceRule(frequency="daily", end_type="on", end_date=date(2026, 10, 21))
        event = _make_event(start=datetime(2026, 10, 19, 9, 0), end=datetime(2026, 10, 19, 10, 0), recurrence=rule)
        instances = expand_event(event, datetime(2026, 10, 1), datetime(2026, 12, 1))
        assert [i.start.day for i in instances] == [19, 20, 21]

    def test_non_recurring_outside_range(self):
        event = _make_event()
        assert events_in_range([event], datetime(2025, 1, 1), datetime(2025, 2, 1)) == []

    def test_invalid_rule(self):
        with pytest.raises(ValueError):
            RecurrenceRule(frequency="hourly")
        with pytest.raises(ValueError):
            RecurrenceRule(days_of_week=(7,))

    def test_describe(self):
        assert describe(RecurrenceRule(frequency="daily")) == "Repeats every day"
        assert describe(RecurrenceRule(
            frequency="weekly", interval=2, days_of_week=(3, 1), end_type="after", end_after_occurrences=5,
        )) == "Repeats every 2 weeks on Mon, Wed, 5 times"
        assert describe(RecurrenceRule(
            frequency="monthly", end_type="on", end_date=date(2027, 1, 31),
        )) == "Repeats every month until 2027-01-31"

    def test_dict_round_trip_keeps_days(self):
        rule = RecurrenceRule(frequency="weekly", days_of_week=(5, 0))
        assert RecurrenceRule.from_dict(rule.to_dict()) == rule
