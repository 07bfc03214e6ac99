"""Overlap detection between bookings.

Conflicts are advisory: callers show them before a change is committed and
decide for themselves whether to go ahead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from .backends.base import CalendarEvent, EventStatus, wall_clock
from .recurrence import expand_events


@dataclass(frozen=True)
class ConflictReport:
    has_conflict: bool = False
    conflicts: tuple[CalendarEvent, ...] = field(default_factory=tuple)


NO_CONFLICT = ConflictReport()


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval test: [a) and [b) share at least one instant."""
    return start_a < end_b and start_b < end_a


def blocks_slot(event: CalendarEvent, completed_blocks: bool = False) -> bool:
    if event.status is EventStatus.CANCELLED:
        return False
    if event.status is EventStatus.COMPLETED:
        return completed_blocks
    return True


def find_conflicts(
    start: datetime,
    end: datetime,
    events: Iterable[CalendarEvent],
    exclude_id: str | None = None,
    owner_id: str | None = None,
    resource_id: str | None = None,
    completed_blocks: bool = False,
) -> ConflictReport:
    """Return the events that a booking at [start, end) would overlap.

    ``exclude_id`` is the event being moved; it and its recurring instances are
    skipped. Only events of the same owner and resource are compared.
    """
    start, end = wall_clock(start), wall_clock(end)
    hits = []
    for other in expand_events(events, start, end):
        if exclude_id is not None and other.source_id == exclude_id:
            continue
        if owner_id is not None and other.owner_id != owner_id:
            continue
        if other.resource_id != resource_id:
            continue
        if not blocks_slot(other, completed_blocks):
            continue
        if overlaps(start, end, other.start, other.end):
            hits.append(other)
    return ConflictReport(has_conflict=bool(hits), conflicts=tuple(hits))


def conflicts_for(event: CalendarEvent, events: Iterable[CalendarEvent],
                  completed_blocks: bool = False) -> ConflictReport:
    """Conflicts of an existing event at its current times."""
    return find_conflicts(
        event.start, event.end, events,
        exclude_id=event.source_id,
        owner_id=event.owner_id,
        resource_id=event.resource_id,
        completed_blocks=completed_blocks,
    )
