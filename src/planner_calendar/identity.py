"""Current account and its permissions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class Permissions:
    can_manage_bookings: bool = False
    can_view_bookings: bool = True


READ_ONLY = Permissions()


@dataclass(frozen=True)
class Identity:
    owner_id: str
    permissions: Permissions = READ_ONLY


@runtime_checkable
class IdentityProvider(Protocol):
    async def resolve(self) -> Identity | None: ...


class StaticIdentityProvider:
    """Identity fixed at construction time (one configured account)."""

    def __init__(self, owner_id: str, permissions: Permissions = READ_ONLY):
        self._identity = Identity(owner_id, permissions)

    async def resolve(self) -> Identity | None:
        return self._identity
