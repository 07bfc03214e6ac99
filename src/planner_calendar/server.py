#!/usr/bin/env python3
"""
planner-calendar — Booking planner MCP server.

Per-account booking calendars with conflict detection and an audited
reschedule workflow. Event stores: in-memory, CalDAV, Google Calendar.

Environment variables:
    PLANNER_CONFIG — Path to planner.yaml (default: /config/planner.yaml)
"""

import json
import logging
import os
import sys
from datetime import datetime
from typing import Any

from mcp.server.fastmcp import FastMCP

from .backends.base import CalendarEvent, EventStore, EventType, NewEvent, StoreError, wall_clock
from .config import PlannerAccount, PlannerConfig, load_config
from .conflicts import ConflictReport
from .planner import Planner
from .query import LoadFailed, events_in_range, filter_events, visible_range
from .recurrence import describe
from .workflow import (
    CommandResult,
    ProposalPending,
    ReasonPrompt,
    WorkflowError,
    WorkflowState,
)

# MCP stdio servers must NEVER write to stdout — log to stderr only.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("planner-calendar")


# ---------------------------------------------------------------------------
# Module-level state
# ---------------------------------------------------------------------------

_config: PlannerConfig = PlannerConfig()
_backends: dict[str, EventStore] = {}
_planners: dict[str, Planner] = {}


def _init_backend(account: PlannerAccount) -> EventStore:
    """Create the event store for an account."""
    if account.type == "memory":
        from .backends.memory import MemoryBackend
        return MemoryBackend(account.owner, account.config)
    elif account.type == "google":
        from .backends.google import GoogleCalendarBackend
        return GoogleCalendarBackend(account.owner, account.config)
    elif account.type == "caldav":
        from .backends.caldav_backend import CalDAVBackend
        return CalDAVBackend(account.owner, account.config)
    else:
        raise ValueError(f"Unknown backend type: {account.type}")


def _get_backend(owner: str) -> EventStore | None:
    """Get store by owner. Lazy-initializes on first access."""
    if owner not in _config.accounts:
        return None
    if owner not in _backends:
        _backends[owner] = _init_backend(_config.accounts[owner])
    return _backends[owner]


def _get_planner(owner: str) -> Planner | None:
    if owner not in _planners:
        backend = _get_backend(owner)
        if backend is None:
            return None
        account = _config.accounts[owner]
        _planners[owner] = Planner(owner, backend, account.permissions, _config.settings)
    return _planners[owner]


def _validate_owner(owner: str) -> dict | None:
    """Return error dict if owner is invalid, None if valid."""
    if not _config.accounts:
        return {"error": "No accounts configured. Set PLANNER_CONFIG env var."}
    if owner not in _config.accounts:
        return {"error": f"Unknown account '{owner}'. Available: {list(_config.accounts.keys())}"}
    return None


async def _loaded_planner(owner: str) -> Planner | dict:
    """Planner for ``owner`` with events loaded, or an error dict."""
    err = _validate_owner(owner)
    if err:
        return err
    planner = _get_planner(owner)
    if not planner.permissions.can_view_bookings:
        return {"error": "Viewing bookings is not permitted for this account"}
    if planner.query.result is None or isinstance(planner.query.result, LoadFailed):
        result = await planner.load()
        if isinstance(result, LoadFailed):
            return {"error": result.message, "state": "error", "retry": True}
    return planner


def _event_to_dict(event: CalendarEvent) -> dict[str, Any]:
    """Convert CalendarEvent to JSON-friendly dict."""
    return {
        "id": event.id,
        "owner": event.owner_id,
        "title": event.title,
        "start": event.start.isoformat(),
        "end": event.end.isoformat(),
        "type": event.type.value,
        "status": event.status.value,
        "timezone": event.timezone,
        "all_day": event.all_day,
        "resource_id": event.resource_id,
        "lead_name": event.lead_name,
        "lead_email": event.lead_email,
        "lead_phone": event.lead_phone,
        "property": event.property_address,
        "community": event.community,
        "notes": event.notes,
        "recurrence": describe(event.recurrence) if event.recurrence else None,
        "recurrence_id": event.recurrence_id,
        "version": event.version,
        "time_changes": [c.to_dict() for c in event.time_changes],
    }


def _conflicts_to_dict(report: ConflictReport) -> dict[str, Any]:
    return {
        "has_conflict": report.has_conflict,
        "conflicts": [
            {"id": e.id, "title": e.title, "start": e.start.isoformat(), "end": e.end.isoformat()}
            for e in report.conflicts
        ],
    }


def _state_to_dict(state: WorkflowState) -> dict[str, Any]:
    result: dict[str, Any] = {"state": state.name}
    if isinstance(state, (ProposalPending, ReasonPrompt)):
        proposal = state.proposal
        result.update({
            "event_id": proposal.event.id,
            "original_start": proposal.original_start.isoformat(),
            "original_end": proposal.original_end.isoformat(),
            "new_start": proposal.new_start.isoformat(),
            "new_end": proposal.new_end.isoformat(),
            **_conflicts_to_dict(state.conflicts),
        })
    if isinstance(state, ReasonPrompt):
        result["reason"] = state.reason
        if state.error:
            result["error"] = state.error
    return result


def _command_to_dict(result: CommandResult) -> dict[str, Any]:
    if not result.ok:
        return {"error": result.error, "retry": True}
    out: dict[str, Any] = {"success": True}
    if result.event is not None:
        out["event"] = _event_to_dict(result.event)
    return out


def _parse_datetime(value: str) -> datetime:
    """Parse ISO 8601 datetime string. Supports date-only and datetime.

    An offset (``Z``, ``+02:00``) is dropped; the wall-clock time is kept.
    """
    from dateutil.parser import parse as parse_dt
    return wall_clock(parse_dt(value))


def _parse_range(start: str, end: str) -> tuple[datetime, datetime] | dict:
    try:
        dt_start = _parse_datetime(start)
    except Exception:
        return {"error": f"Invalid start date: {start}"}
    try:
        dt_end = _parse_datetime(end)
    except Exception:
        return {"error": f"Invalid end date: {end}"}
    if dt_end <= dt_start:
        return {"error": "End must be after start"}
    return dt_start, dt_end


# ---------------------------------------------------------------------------
# MCP Server + Tools
# ---------------------------------------------------------------------------

mcp = FastMCP("planner-calendar")


@mcp.tool()
async def list_accounts() -> dict:
    """List all configured planner accounts.

    Returns owner, label, store type and whether bookings can be viewed and managed.
    """
    if not _config.accounts:
        return {"error": "No accounts configured"}
    return {
        "accounts": [
            {
                "owner": a.owner,
                "label": a.label,
                "type": a.type,
                "can_view_bookings": a.permissions.can_view_bookings,
                "can_manage_bookings": a.permissions.can_manage_bookings,
            }
            for a in _config.accounts.values()
        ]
    }


@mcp.tool()
async def list_events(
    owner: str,
    type: str = "all",
    search: str = "",
    view: str = "",
    date: str = "",
    start: str = "",
    end: str = "",
) -> dict:
    """List an account's bookings.

    The result ``state`` is "loaded", "empty" (loaded, nothing matches) or
    "error" (could not load; retry later). An error is never reported as an
    empty calendar.

    Args:
        owner: Account owner id
        type: "all" or one of showing, move_in, inspection, maintenance, meeting, other
        search: Case-insensitive match on title, lead name, property or community
        view: "month", "week" or "day" to limit to that view's window around `date`
        date: Reference date for `view` (ISO 8601). Default: today.
        start: Window start (ISO 8601), used with `end` instead of `view`
        end: Window end (ISO 8601)
    """
    err = _validate_owner(owner)
    if err:
        return err
    planner = _get_planner(owner)

    try:
        result = await planner.load()
    except PermissionError as e:
        return {"error": str(e)}
    if isinstance(result, LoadFailed):
        return {"state": "error", "error": result.message, "retry": True}

    try:
        events = filter_events(result.events, type, search)
    except ValueError as e:
        return {"error": str(e)}

    window: tuple[datetime, datetime] | None = None
    if start and end:
        parsed = _parse_range(start, end)
        if isinstance(parsed, dict):
            return parsed
        window = parsed
    elif view:
        try:
            ref = _parse_datetime(date).date() if date else datetime.now().date()
            window = visible_range(view, ref)
        except ValueError as e:
            return {"error": str(e)}
    if window:
        events = events_in_range(events, *window)

    out: dict[str, Any] = {
        "state": "loaded" if events else "empty",
        "owner": owner,
        "count": len(events),
        "events": [_event_to_dict(e) for e in events],
    }
    if window:
        out["start"] = window[0].isoformat()
        out["end"] = window[1].isoformat()
    return out


@mcp.tool()
async def get_event(owner: str, event_id: str) -> dict:
    """Get a single booking with its full time-change history.

    Args:
        owner: Account owner id
        event_id: Event ID
    """
    planner = await _loaded_planner(owner)
    if isinstance(planner, dict):
        return planner
    event = planner.query.find(event_id)
    if event is None:
        return {"error": f"Event not found: {event_id}"}
    return {"event": _event_to_dict(event)}


@mcp.tool()
async def check_conflicts(
    owner: str,
    start: str,
    end: str,
    resource_id: str = "",
    exclude_id: str = "",
) -> dict:
    """Check whether a time slot overlaps other active bookings.

    Args:
        owner: Account owner id
        start: Slot start (ISO 8601)
        end: Slot end (ISO 8601)
        resource_id: Location or lead the booking occupies (optional)
        exclude_id: Booking being moved, skipped in the comparison (optional)
    """
    planner = await _loaded_planner(owner)
    if isinstance(planner, dict):
        return planner
    parsed = _parse_range(start, end)
    if isinstance(parsed, dict):
        return parsed
    report = planner.check_conflicts(*parsed, resource_id=resource_id or None, exclude_id=exclude_id or None)
    return _conflicts_to_dict(report)


@mcp.tool()
async def create_event(
    owner: str,
    title: str,
    start: str,
    end: str,
    type: str = "showing",
    resource_id: str = "",
    lead_name: str = "",
    lead_email: str = "",
    lead_phone: str = "",
    property: str = "",
    community: str = "",
    notes: str = "",
) -> dict:
    """Create a new booking.

    Args:
        owner: Account owner id
        title: Booking title
        start: Start date/time (ISO 8601, e.g. "2026-02-14T14:00:00")
        end: End date/time (ISO 8601)
        type: showing, move_in, inspection, maintenance, meeting or other
        resource_id: Location or lead the booking occupies (optional)
        lead_name: Lead name (optional)
        lead_email: Lead email (optional)
        lead_phone: Lead phone (optional)
        property: Property address (optional)
        community: Community name (optional)
        notes: Notes (optional)
    """
    planner = await _loaded_planner(owner)
    if isinstance(planner, dict):
        return planner
    parsed = _parse_range(start, end)
    if isinstance(parsed, dict):
        return parsed

    try:
        data = NewEvent(
            title=title,
            start=parsed[0],
            end=parsed[1],
            type=EventType(type),
            timezone=_config.settings.timezone,
            resource_id=resource_id or None,
            lead_name=lead_name,
            lead_email=lead_email,
            lead_phone=lead_phone,
            property_address=property,
            community=community,
            notes=notes,
        )
        conflicts = planner.check_conflicts(data.start, data.end, resource_id=data.resource_id)
        result = await planner.commands.create(owner, data)
    except (ValueError, PermissionError) as e:
        return {"error": str(e)}

    out = _command_to_dict(result)
    if result.ok and conflicts.has_conflict:
        out["warning"] = _conflicts_to_dict(conflicts)
    return out


@mcp.tool()
async def propose_time_change(
    owner: str,
    event_id: str,
    start: str,
    end: str,
    source: str = "edit",
) -> dict:
    """Propose new times for a booking.

    Returns the workflow state with any conflicting bookings. Proposing the
    booking's current times changes nothing and leaves the workflow idle.
    Follow up with set_reason, confirm_time_change, skip_reason or
    cancel_time_change.

    Args:
        owner: Account owner id
        event_id: Booking ID
        start: New start (ISO 8601)
        end: New end (ISO 8601)
        source: "drag", "resize" or "edit"
    """
    planner = await _loaded_planner(owner)
    if isinstance(planner, dict):
        return planner
    parsed = _parse_range(start, end)
    if isinstance(parsed, dict):
        return parsed
    try:
        state = planner.workflow.propose(event_id, *parsed, source=source)
    except (ValueError, PermissionError, WorkflowError, StoreError) as e:
        return {"error": str(e)}
    return _state_to_dict(state)


def _open_prompt(planner: Planner) -> None:
    if isinstance(planner.workflow.state, ProposalPending):
        planner.workflow.open_reason_prompt()


@mcp.tool()
async def set_reason(owner: str, reason: str) -> dict:
    """Attach a reason to the open time change without committing it.

    Args:
        owner: Account owner id
        reason: Free-text reason for the change
    """
    err = _validate_owner(owner)
    if err:
        return err
    planner = _get_planner(owner)
    try:
        _open_prompt(planner)
        state = planner.workflow.set_reason(reason)
    except WorkflowError as e:
        return {"error": str(e)}
    return _state_to_dict(state)


@mcp.tool()
async def confirm_time_change(owner: str, reason: str = "") -> dict:
    """Commit the open time change, with the given or previously set reason.

    On failure the workflow stays at the reason prompt, keeping the reason,
    so the same call can be retried.

    Args:
        owner: Account owner id
        reason: Reason for the change (optional)
    """
    err = _validate_owner(owner)
    if err:
        return err
    planner = _get_planner(owner)
    try:
        _open_prompt(planner)
        state = await planner.workflow.confirm(reason or None)
    except WorkflowError as e:
        return {"error": str(e)}
    return _state_to_dict(state)


@mcp.tool()
async def skip_reason(owner: str) -> dict:
    """Commit the open time change without a reason.

    Args:
        owner: Account owner id
    """
    err = _validate_owner(owner)
    if err:
        return err
    planner = _get_planner(owner)
    try:
        _open_prompt(planner)
        state = await planner.workflow.skip()
    except WorkflowError as e:
        return {"error": str(e)}
    return _state_to_dict(state)


@mcp.tool()
async def cancel_time_change(owner: str) -> dict:
    """Abandon the open time change. Nothing is written.

    Args:
        owner: Account owner id
    """
    err = _validate_owner(owner)
    if err:
        return err
    planner = _get_planner(owner)
    try:
        state = planner.workflow.cancel()
    except WorkflowError as e:
        return {"error": str(e)}
    return _state_to_dict(state)


@mcp.tool()
async def workflow_state(owner: str) -> dict:
    """Show the account's current time-change workflow state.

    Args:
        owner: Account owner id
    """
    err = _validate_owner(owner)
    if err:
        return err
    return _state_to_dict(_get_planner(owner).workflow.state)


@mcp.tool()
async def cancel_event(owner: str, event_id: str, reason: str = "") -> dict:
    """Cancel a booking. Cancelled bookings stay on record and free their slot.

    Args:
        owner: Account owner id
        event_id: Booking ID
        reason: Cancellation reason (optional)
    """
    planner = await _loaded_planner(owner)
    if isinstance(planner, dict):
        return planner
    try:
        result = await planner.commands.cancel(event_id, reason or None)
    except PermissionError as e:
        return {"error": str(e)}
    return _command_to_dict(result)


@mcp.tool()
async def complete_event(owner: str, event_id: str) -> dict:
    """Mark a booking as completed.

    Args:
        owner: Account owner id
        event_id: Booking ID
    """
    planner = await _loaded_planner(owner)
    if isinstance(planner, dict):
        return planner
    try:
        result = await planner.commands.complete(event_id)
    except PermissionError as e:
        return {"error": str(e)}
    return _command_to_dict(result)


@mcp.tool()
async def delete_event(owner: str, event_id: str) -> dict:
    """Permanently delete a booking, including its history.

    Args:
        owner: Account owner id
        event_id: Booking ID
    """
    planner = await _loaded_planner(owner)
    if isinstance(planner, dict):
        return planner
    try:
        result = await planner.commands.delete(event_id)
    except PermissionError as e:
        return {"error": str(e)}
    if result.ok:
        return {"success": True, "message": f"Booking deleted from {owner}"}
    return _command_to_dict(result)


# ---------------------------------------------------------------------------
# Google OAuth2 CLI helper
# ---------------------------------------------------------------------------

def _run_google_auth(owner: str) -> None:
    """Interactive OAuth2 flow for Google Calendar. Run once to obtain token."""
    if owner not in _config.accounts:
        print(f"Unknown account: {owner}. Available: {list(_config.accounts.keys())}", file=sys.stderr)
        sys.exit(1)

    account = _config.accounts[owner]
    if account.type != "google":
        print(f"Account '{owner}' is type '{account.type}', not 'google'", file=sys.stderr)
        sys.exit(1)

    from google_auth_oauthlib.flow import InstalledAppFlow

    from .backends.google import SCOPES

    credentials_file = account.config["credentials_file"]
    token_file = account.config.get("token_file", "/data/google_calendar_token.json")

    if not os.path.isfile(credentials_file):
        print(f"Credentials file not found: {credentials_file}", file=sys.stderr)
        sys.exit(1)

    flow = InstalledAppFlow.from_client_secrets_file(credentials_file, SCOPES)
    creds = flow.run_local_server(port=0)

    # Ensure directory exists
    os.makedirs(os.path.dirname(token_file) or ".", exist_ok=True)
    with open(token_file, "w") as f:
        json.dump(json.loads(creds.to_json()), f)

    print(f"Token saved to {token_file}", file=sys.stderr)
    print("Google Calendar authentication complete.", file=sys.stderr)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Entry point for console script and python -m."""
    global _config

    # Handle --auth flag for Google OAuth2 setup
    if "--auth" in sys.argv:
        _config = load_config()
        idx = sys.argv.index("--auth")
        provider = sys.argv[idx + 1] if idx + 1 < len(sys.argv) else ""
        if provider != "google":
            print(f"Only --auth google is supported, got: {provider}", file=sys.stderr)
            sys.exit(1)
        owner = ""
        if "--account" in sys.argv:
            acct_idx = sys.argv.index("--account")
            owner = sys.argv[acct_idx + 1] if acct_idx + 1 < len(sys.argv) else ""
        if not owner:
            # Find first google account
            for name, acct in _config.accounts.items():
                if acct.type == "google":
                    owner = name
                    break
        if not owner:
            print("No Google account found in config", file=sys.stderr)
            sys.exit(1)
        _run_google_auth(owner)
        return

    _config = load_config()
    if _config.accounts:
        logger.info("Loaded %d account(s): %s", len(_config.accounts), list(_config.accounts.keys()))
    else:
        logger.warning("No accounts loaded (PLANNER_CONFIG=%s)", os.environ.get("PLANNER_CONFIG", ""))
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
