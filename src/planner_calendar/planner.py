"""One owner's planner: query, reschedule workflow, commands and view wired together."""

from __future__ import annotations

from datetime import date, datetime

from .backends.base import CalendarEvent, EventStore
from .config import PlannerSettings
from .conflicts import ConflictReport, find_conflicts
from .identity import Permissions, StaticIdentityProvider
from .query import EventQuery, filter_events
from .view import CalendarView
from .workflow import BookingCommands, RescheduleWorkflow


class Planner:
    def __init__(
        self,
        owner_id: str,
        store: EventStore,
        permissions: Permissions,
        settings: PlannerSettings | None = None,
    ):
        self.owner_id = owner_id
        self.permissions = permissions
        self.settings = settings or PlannerSettings()
        self.query = EventQuery(store, StaticIdentityProvider(owner_id, permissions))
        self.workflow = RescheduleWorkflow(
            store, self.query, permissions,
            completed_blocks=self.settings.completed_blocks,
            concurrency=self.settings.concurrency,
        )
        self.commands = BookingCommands(store, self.query, permissions)
        self.create_intent: date | None = None
        self.selected: CalendarEvent | None = None

    async def load(self):
        if not self.permissions.can_view_bookings:
            raise PermissionError("Viewing bookings is not permitted for this account")
        return await self.query.load(self.owner_id)

    def check_conflicts(
        self,
        start: datetime,
        end: datetime,
        resource_id: str | None = None,
        exclude_id: str | None = None,
    ) -> ConflictReport:
        if end <= start:
            raise ValueError("End must be after start")
        return find_conflicts(
            start, end, self.query.events,
            exclude_id=exclude_id,
            owner_id=self.owner_id,
            resource_id=resource_id,
            completed_blocks=self.settings.completed_blocks,
        )

    def _date_clicked(self, day: date) -> None:
        self.create_intent = day

    def _event_clicked(self, event: CalendarEvent) -> None:
        self.selected = event

    def _time_proposed(self, event_id: str, new_start: datetime, new_end: datetime) -> None:
        self.workflow.propose(event_id, new_start, new_end)

    def view(
        self,
        view: str = "month",
        current: date | None = None,
        type_filter: str = "all",
        search: str = "",
    ) -> CalendarView:
        """Build the calendar projection for the loaded events.

        Accounts without ``can_manage_bookings`` get a read-only view.
        """
        return CalendarView.for_permissions(
            filter_events(self.query.events, type_filter, search),
            self.permissions,
            on_date_clicked=self._date_clicked,
            on_event_clicked=self._event_clicked,
            on_event_time_proposed=self._time_proposed,
            view=view,
            current=current,
            snap_minutes=self.settings.snap_minutes,
            min_duration_minutes=self.settings.min_duration_minutes,
        )
