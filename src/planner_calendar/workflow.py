"""Reschedule workflow and booking lifecycle commands.

A time change moves through::

    Idle -> ProposalPending -> ReasonPrompt -> Committing -> Idle

and any interactive state can be abandoned back to Idle. The state is a
single tagged value; there are no independent dialog flags to fall out of
sync.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Union

from .backends.base import (
    CalendarEvent,
    EventNotFoundError,
    EventStore,
    ImmutableEventError,
    NewEvent,
    wall_clock,
)
from .conflicts import ConflictReport, NO_CONFLICT, find_conflicts
from .identity import Permissions
from .query import EventQuery, Loaded, LoadFailed

logger = logging.getLogger("planner-calendar")

LAST_WRITE_WINS = "last_write_wins"
REJECT_STALE = "reject_stale"
CONCURRENCY_POLICIES = {LAST_WRITE_WINS, REJECT_STALE}

PROPOSAL_SOURCES = {"drag", "resize", "edit"}


class WorkflowError(RuntimeError):
    """The requested step is not valid in the current state."""


class WorkflowBusyError(WorkflowError):
    """A proposal is already open or being committed."""


# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TimeProposal:
    event: CalendarEvent  # as loaded when the gesture started
    new_start: datetime
    new_end: datetime
    source: str = "drag"

    @property
    def original_start(self) -> datetime:
        return self.event.start

    @property
    def original_end(self) -> datetime:
        return self.event.end


@dataclass(frozen=True)
class Idle:
    name = "idle"


@dataclass(frozen=True)
class ProposalPending:
    proposal: TimeProposal
    conflicts: ConflictReport = NO_CONFLICT
    name = "proposal_pending"


@dataclass(frozen=True)
class ReasonPrompt:
    proposal: TimeProposal
    conflicts: ConflictReport = NO_CONFLICT
    reason: str = ""
    error: str | None = None  # last commit failure, kept for retry
    name = "reason_prompt"


@dataclass(frozen=True)
class Committing:
    proposal: TimeProposal
    reason: str | None = None
    name = "committing"


WorkflowState = Union[Idle, ProposalPending, ReasonPrompt, Committing]

IDLE = Idle()


class RescheduleWorkflow:
    """Drives one time change at a time for an owner's planner."""

    def __init__(
        self,
        store: EventStore,
        query: EventQuery,
        permissions: Permissions,
        completed_blocks: bool = False,
        concurrency: str = LAST_WRITE_WINS,
    ):
        if concurrency not in CONCURRENCY_POLICIES:
            raise ValueError(f"Unknown concurrency policy '{concurrency}'")
        self._store = store
        self._query = query
        self._permissions = permissions
        self._completed_blocks = completed_blocks
        self._concurrency = concurrency
        self.state: WorkflowState = IDLE

    def _require(self, *types: type) -> None:
        if not isinstance(self.state, types):
            expected = ", ".join(t.name for t in types)
            raise WorkflowError(f"Expected state {expected}, workflow is {self.state.name}")

    def propose(
        self,
        event_id: str,
        new_start: datetime,
        new_end: datetime,
        source: str = "drag",
    ) -> WorkflowState:
        """Open a time change for an event.

        Dropping an event back on its own slot is a no-op and leaves the
        workflow idle.
        """
        if not self._permissions.can_manage_bookings:
            raise PermissionError("Managing bookings is not permitted for this account")
        if source not in PROPOSAL_SOURCES:
            raise ValueError(f"Unknown proposal source '{source}'")
        if not isinstance(self.state, Idle):
            raise WorkflowBusyError(f"A time change is already {self.state.name}")

        if not isinstance(self._query.result, Loaded):
            reason = self._query.result.message if self._query.result else "calendar has not been loaded"
            raise WorkflowError(f"Cannot propose a time change: {reason}")
        event = self._query.find(event_id)
        if event is None:
            raise EventNotFoundError(f"Event not found: {event_id}")
        if event.is_terminal:
            raise ImmutableEventError(f"Event '{event_id}' is {event.status.value}")
        new_start, new_end = wall_clock(new_start), wall_clock(new_end)
        if new_end <= new_start:
            raise ValueError("New end must be after new start")
        if new_start == event.start and new_end == event.end:
            return self.state

        report = find_conflicts(
            new_start, new_end, self._query.events,
            exclude_id=event.id,
            owner_id=event.owner_id,
            resource_id=event.resource_id,
            completed_blocks=self._completed_blocks,
        )
        if report.has_conflict:
            logger.info("Proposed time for '%s' overlaps %d event(s)", event.id, len(report.conflicts))
        self.state = ProposalPending(TimeProposal(event, new_start, new_end, source), report)
        return self.state

    def open_reason_prompt(self) -> WorkflowState:
        self._require(ProposalPending)
        self.state = ReasonPrompt(self.state.proposal, self.state.conflicts)
        return self.state

    def set_reason(self, reason: str) -> WorkflowState:
        self._require(ReasonPrompt)
        self.state = replace(self.state, reason=reason)
        return self.state

    async def confirm(self, reason: str | None = None) -> WorkflowState:
        """Commit the open proposal with the composed (or given) reason."""
        if isinstance(self.state, Committing):
            raise WorkflowBusyError("Time change is already being committed")
        self._require(ReasonPrompt)
        prompt = self.state
        if reason is not None:
            prompt = replace(prompt, reason=reason)
        return await self._commit(prompt, prompt.reason.strip() or None)

    async def skip(self) -> WorkflowState:
        """Commit the open proposal without a reason."""
        if isinstance(self.state, Committing):
            raise WorkflowBusyError("Time change is already being committed")
        self._require(ReasonPrompt)
        return await self._commit(self.state, None)

    def cancel(self) -> WorkflowState:
        """Abandon the open proposal. Nothing is written."""
        if isinstance(self.state, Committing):
            raise WorkflowBusyError("A dispatched commit cannot be cancelled")
        self.state = IDLE
        return self.state

    async def _commit(self, prompt: ReasonPrompt, reason: str | None) -> WorkflowState:
        proposal = prompt.proposal
        self.state = Committing(proposal, reason)

        kwargs = {}
        if self._concurrency == REJECT_STALE:
            kwargs["expected_version"] = proposal.event.version
        try:
            await self._store.reschedule_event(
                proposal.event.id, proposal.new_start, proposal.new_end, reason, **kwargs
            )
        except Exception as e:
            logger.warning("Failed to reschedule '%s': %s", proposal.event.id, e)
            self.state = replace(prompt, error=f"Failed to reschedule booking: {e}")
            return self.state

        logger.info(
            "Rescheduled '%s': %s -> %s",
            proposal.event.id, proposal.original_start.isoformat(), proposal.new_start.isoformat(),
        )
        self.state = IDLE
        reloaded = await self._query.load(proposal.event.owner_id)
        if isinstance(reloaded, LoadFailed):
            logger.warning("Reschedule of '%s' saved but reload failed: %s", proposal.event.id, reloaded.message)
        return self.state


# ---------------------------------------------------------------------------
# Lifecycle commands
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CommandResult:
    ok: bool
    event: CalendarEvent | None = None
    error: str | None = None


class BookingCommands:
    """Create, cancel, complete and delete bookings.

    Store failures come back as ``CommandResult(ok=False)`` so the caller can
    keep its form state and offer a retry.
    """

    def __init__(self, store: EventStore, query: EventQuery, permissions: Permissions):
        self._store = store
        self._query = query
        self._permissions = permissions

    def _check_permission(self) -> None:
        if not self._permissions.can_manage_bookings:
            raise PermissionError("Managing bookings is not permitted for this account")

    async def _refresh(self, owner_id: str | None) -> None:
        if owner_id:
            await self._query.load(owner_id)

    def _reject_terminal(self, event_id: str) -> CommandResult | None:
        event = self._query.find(event_id)
        if event is not None and event.is_terminal:
            return CommandResult(False, event, f"Booking is already {event.status.value}")
        return None

    def _owner_of(self, event_id: str) -> str | None:
        event = self._query.find(event_id)
        return event.owner_id if event else None

    async def create(self, owner_id: str, data: NewEvent) -> CommandResult:
        self._check_permission()
        try:
            event = await self._store.create_event(owner_id, data)
        except Exception as e:
            logger.warning("Failed to create event '%s': %s", data.title, e)
            return CommandResult(False, error=f"Failed to create booking: {e}")
        await self._refresh(owner_id)
        return CommandResult(True, event)

    async def cancel(self, event_id: str, reason: str | None = None) -> CommandResult:
        self._check_permission()
        rejected = self._reject_terminal(event_id)
        if rejected:
            return rejected
        try:
            event = await self._store.cancel_event(event_id, reason)
        except Exception as e:
            logger.warning("Failed to cancel event '%s': %s", event_id, e)
            return CommandResult(False, error=f"Failed to cancel booking: {e}")
        await self._refresh(event.owner_id)
        return CommandResult(True, event)

    async def complete(self, event_id: str) -> CommandResult:
        self._check_permission()
        rejected = self._reject_terminal(event_id)
        if rejected:
            return rejected
        try:
            event = await self._store.complete_event(event_id)
        except Exception as e:
            logger.warning("Failed to complete event '%s': %s", event_id, e)
            return CommandResult(False, error=f"Failed to complete booking: {e}")
        await self._refresh(event.owner_id)
        return CommandResult(True, event)

    async def delete(self, event_id: str) -> CommandResult:
        """Hard delete, distinct from cancellation."""
        self._check_permission()
        owner_id = self._owner_of(event_id)
        try:
            deleted = await self._store.delete_event(event_id)
        except Exception as e:
            logger.warning("Failed to delete event '%s': %s", event_id, e)
            return CommandResult(False, error=f"Failed to delete booking: {e}")
        if not deleted:
            return CommandResult(False, error=f"Event not found: {event_id}")
        await self._refresh(owner_id)
        return CommandResult(True)
