"""Tests for booking overlap detection."""

from dataclasses import replace
from datetime import datetime, timezone

from planner_calendar.backends.base import CalendarEvent, EventStatus
from planner_calendar.conflicts import conflicts_for, find_conflicts, overlaps
from planner_calendar.recurrence import RecurrenceRule


def _make_event(
    id: str = "evt-1",
    start: datetime | None = None,
    end: datetime | None = None,
    status: EventStatus = EventStatus.SCHEDULED,
    owner_id: str = "acme",
    resource_id: str | None = None,
) -> CalendarEvent:
    return CalendarEvent(
        id=id,
        owner_id=owner_id,
        title=f"Booking {id}",
        start=start or datetime(2024, 12, 18, 9, 0),
        end=end or datetime(2024, 12, 18, 10, 0),
        status=status,
        resource_id=resource_id,
    )


class TestOverlaps:
    def test_partial_overlap(self):
        assert overlaps(
            datetime(2024, 12, 18, 9, 30), datetime(2024, 12, 18, 10, 30),
            datetime(2024, 12, 18, 10, 0), datetime(2024, 12, 18, 11, 0),
        )

    def test_touching_intervals_do_not_overlap(self):
        # [09:00, 10:00) and [10:00, 11:00) share no instant
        assert not overlaps(
            datetime(2024, 12, 18, 9, 0), datetime(2024, 12, 18, 10, 0),
            datetime(2024, 12, 18, 10, 0), datetime(2024, 12, 18, 11, 0),
        )

    def test_containment(self):
        assert overlaps(
            datetime(2024, 12, 18, 8, 0), datetime(2024, 12, 18, 12, 0),
            datetime(2024, 12, 18, 9, 0), datetime(2024, 12, 18, 10, 0),
        )

    def test_symmetric(self):
        a = (datetime(2024, 12, 18, 9, 0), datetime(2024, 12, 18, 10, 0))
        b = (datetime(2024, 12, 18, 9, 59), datetime(2024, 12, 18, 11, 0))
        assert overlaps(*a, *b) == overlaps(*b, *a)


class TestFindConflicts:
    def test_rescheduled_event_overlaps_neighbour(self):
        e = _make_event("E")
        f = _make_event("F", datetime(2024, 12, 18, 10, 0), datetime(2024, 12, 18, 11, 0))

        report = find_conflicts(
            datetime(2024, 12, 18, 9, 30), datetime(2024, 12, 18, 10, 30), [e, f], exclude_id="E",
        )
        assert report.has_conflict is True
        assert [c.id for c in report.conflicts] == ["F"]

    def test_self_is_never_a_conflict(self):
        e = _make_event("E")
        report = conflicts_for(e, [e])
        assert report.has_conflict is False
        assert report.conflicts == ()

    def test_cancelled_events_do_not_block(self):
        other = _make_event("X", status=EventStatus.CANCELLED)
        report = find_conflicts(datetime(2024, 12, 18, 9, 0), datetime(2024, 12, 18, 10, 0), [other])
        assert report.has_conflict is False

    def test_completed_events_do_not_block_by_default(self):
        other = _make_event("X", status=EventStatus.COMPLETED)
        report = find_conflicts(datetime(2024, 12, 18, 9, 0), datetime(2024, 12, 18, 10, 0), [other])
        assert report.has_conflict is False

    def test_completed_events_block_when_configured(self):
        other = _make_event("X", status=EventStatus.COMPLETED)
        report = find_conflicts(
            datetime(2024, 12, 18, 9, 0), datetime(2024, 12, 18, 10, 0), [other], completed_blocks=True,
        )
        assert report.has_conflict is True

    def test_other_owner_is_ignored(self):
        other = _make_event("X", owner_id="other-tenant")
        report = find_conflicts(
            datetime(2024, 12, 18, 9, 0), datetime(2024, 12, 18, 10, 0), [other], owner_id="acme",
        )
        assert report.has_conflict is False

    def test_other_resource_is_ignored(self):
        other = _make_event("X", resource_id="unit-2")
        report = find_conflicts(
            datetime(2024, 12, 18, 9, 0), datetime(2024, 12, 18, 10, 0), [other], resource_id="unit-1",
        )
        assert report.has_conflict is False

    def test_same_resource_conflicts(self):
        other = _make_event("X", resource_id="unit-1")
        report = find_conflicts(
            datetime(2024, 12, 18, 9, 30), datetime(2024, 12, 18, 9, 45), [other], resource_id="unit-1",
        )
        assert report.has_conflict is True

    def test_recurring_instance_conflicts(self):
        rule = RecurrenceRule(frequency="daily", end_type="after", end_after_occurrences=10)
        series = replace(_make_event("S"), recurrence=rule)
        report = find_conflicts(datetime(2024, 12, 21, 9, 30), datetime(2024, 12, 21, 9, 45), [series])
        assert [c.id for c in report.conflicts] == ["S_2024-12-21"]
        assert report.conflicts[0].source_id == "S"

    def test_multiple_conflicts_reported(self):
        events = [
            _make_event("A", datetime(2024, 12, 18, 9, 0), datetime(2024, 12, 18, 10, 0)),
            _make_event("B", datetime(2024, 12, 18, 10, 0), datetime(2024, 12, 18, 11, 0)),
            _make_event("C", datetime(2024, 12, 18, 12, 0), datetime(2024, 12, 18, 13, 0)),
        ]
        report = find_conflicts(datetime(2024, 12, 18, 9, 30), datetime(2024, 12, 18, 10, 30), events)
        assert {c.id for c in report.conflicts} == {"A", "B"}

    def test_offset_window_against_local_events(self):
        utc = timezone.utc
        rule = RecurrenceRule(frequency="daily", end_type="after", end_after_occurrences=10)
        events = [_make_event("A"), replace(_make_event("S"), recurrence=rule)]
        report = find_conflicts(
            datetime(2024, 12, 18, 9, 30, tzinfo=utc), datetime(2024, 12, 18, 9, 45, tzinfo=utc), events,
        )
        assert {c.id for c in report.conflicts} == {"A", "S_2024-12-18"}
