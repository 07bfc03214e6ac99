"""YAML configuration loading for planner accounts and settings."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

import yaml

from .identity import Permissions

logger = logging.getLogger("planner-calendar")

CONFIG_PATH = os.environ.get("PLANNER_CONFIG", "/config/planner.yaml")

VALID_TYPES = {"memory", "google", "caldav"}
VALID_CONCURRENCY = {"last_write_wins", "reject_stale"}


@dataclass
class PlannerAccount:
    """One tenant whose bookings live in a single event store."""

    owner: str
    label: str
    type: str  # memory, google, caldav
    config: dict[str, Any] = field(default_factory=dict)
    permissions: Permissions = field(default_factory=Permissions)


@dataclass
class PlannerSettings:
    snap_minutes: int = 5
    min_duration_minutes: int = 15
    completed_blocks: bool = False  # completed bookings free their slot by default
    concurrency: str = "last_write_wins"
    timezone: str = "UTC"


@dataclass
class PlannerConfig:
    accounts: dict[str, PlannerAccount] = field(default_factory=dict)
    settings: PlannerSettings = field(default_factory=PlannerSettings)


def _load_settings(raw: dict[str, Any] | None) -> PlannerSettings:
    raw = raw or {}
    settings = PlannerSettings(
        snap_minutes=int(raw.get("snap_minutes", 5)),
        min_duration_minutes=int(raw.get("min_duration_minutes", 15)),
        completed_blocks=bool(raw.get("completed_blocks", False)),
        concurrency=str(raw.get("concurrency", "last_write_wins")).strip().lower(),
        timezone=str(raw.get("timezone", "UTC")),
    )
    if settings.snap_minutes < 1 or settings.snap_minutes > 60:
        raise ValueError(f"planner.snap_minutes must be between 1 and 60, got {settings.snap_minutes}")
    if settings.min_duration_minutes < 1:
        raise ValueError("planner.min_duration_minutes must be positive")
    if settings.concurrency not in VALID_CONCURRENCY:
        raise ValueError(
            f"planner.concurrency: unknown policy '{settings.concurrency}'. "
            f"Must be one of: {VALID_CONCURRENCY}"
        )
    return settings


def _warn_missing_env(owner: str, config: dict[str, Any]) -> None:
    for env_key in ("username_env", "password_env"):
        env_var = config[env_key]
        if not os.environ.get(env_var):
            logger.warning("Account '%s': env var '%s' not set", owner, env_var)


def load_config() -> PlannerConfig:
    """Load and validate planner.yaml.

    Returns the accounts keyed by owner id plus the planner settings.
    """
    path = CONFIG_PATH
    if not os.path.isfile(path):
        logger.warning("Config file not found: %s", path)
        return PlannerConfig()

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not raw or "accounts" not in raw:
        logger.warning("No 'accounts' key in config file")
        return PlannerConfig(settings=_load_settings((raw or {}).get("planner")))

    settings = _load_settings(raw.get("planner"))
    accounts: dict[str, PlannerAccount] = {}

    for entry in raw["accounts"]:
        owner = str(entry.get("owner", "")).strip()
        if not owner:
            raise ValueError("Account missing 'owner' field")
        if owner in accounts:
            raise ValueError(f"Duplicate account owner: '{owner}'")

        acct_type = str(entry.get("type", "memory")).strip().lower()
        if acct_type not in VALID_TYPES:
            raise ValueError(f"Account '{owner}': unknown type '{acct_type}'. Must be one of: {VALID_TYPES}")

        label = entry.get("label", owner)

        raw_perms = entry.get("permissions") or {}
        if not isinstance(raw_perms, dict):
            raise ValueError(f"Account '{owner}': 'permissions' must be a mapping")
        permissions = Permissions(
            can_manage_bookings=bool(raw_perms.get("manage_bookings", False)),
            can_view_bookings=bool(raw_perms.get("view_bookings", True)),
        )

        # Collect type-specific config (everything except metadata fields)
        config = {
            k: v for k, v in entry.items()
            if k not in ("owner", "label", "type", "permissions")
        }

        if acct_type == "google":
            if "credentials_file" not in config:
                raise ValueError(f"Account '{owner}' (google): 'credentials_file' is required")

        elif acct_type == "caldav":
            if "url" not in config:
                raise ValueError(f"Account '{owner}' (caldav): 'url' is required")
            if "username_env" not in config or "password_env" not in config:
                raise ValueError(f"Account '{owner}' (caldav): 'username_env' and 'password_env' are required")
            _warn_missing_env(owner, config)

        accounts[owner] = PlannerAccount(
            owner=owner, label=label, type=acct_type, config=config, permissions=permissions,
        )

    return PlannerConfig(accounts=accounts, settings=settings)
