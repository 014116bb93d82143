"""Interfaces for the external systems the provisioning workflow drives."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Protocol

from .models import CurrentState


class StoreError(RuntimeError):
    """Base exception raised by store implementations."""


class StoreUnavailableError(StoreError):
    """Raised when a store cannot be reached or authenticated against."""


@dataclass(frozen=True)
class SeatCounts:
    sku: str
    total: int
    consumed: int

    @property
    def available(self) -> int:
        return max(0, self.total - self.consumed)


class IdentityStore(Protocol):
    def get_user(self, upn: str) -> Optional[CurrentState]:
        """Return a snapshot of ``upn`` including group names, or ``None``."""

    def find_user(self, query: str) -> Optional[str]:
        """Resolve a UPN or mail address to the UPN of an existing identity."""

    def create_user(
        self,
        upn: str,
        display_name: str,
        attributes: Mapping[str, str],
        password: Optional[str],
    ) -> str:
        """Create an identity and return its object id."""

    def update_user(self, upn: str, attributes: Mapping[str, Optional[str]]) -> None: ...

    def set_usage_location(self, upn: str, location: str) -> None: ...

    def set_manager(self, upn: str, manager_upn: str) -> None: ...


class LicenseStore(Protocol):
    def seat_counts(self, sku: str) -> Optional[SeatCounts]:
        """Return seat counts for ``sku`` or ``None`` if it is not subscribed."""

    def assign_license(self, upn: str, sku: str) -> None: ...

    def remove_license(self, upn: str, sku: str) -> None: ...


class GroupStore(Protocol):
    def find_group(self, name: str) -> Optional[str]:
        """Return the id of the group called ``name`` without creating it."""

    def list_members(self, group_id: str) -> List[str]: ...

    def add_member(self, group_id: str, upn: str) -> None: ...

    def remove_member(self, group_id: str, upn: str) -> None: ...


class MailboxStore(Protocol):
    def mailbox_exists(self, upn: str) -> bool: ...

    def add_to_distribution_list(self, list_name: str, upn: str) -> None: ...


def seat_report(store: LicenseStore, skus: List[str]) -> Dict[str, Optional[SeatCounts]]:
    return {sku: store.seat_counts(sku) for sku in skus}


__all__ = [
    "GroupStore",
    "IdentityStore",
    "LicenseStore",
    "MailboxStore",
    "SeatCounts",
    "StoreError",
    "StoreUnavailableError",
    "seat_report",
]
