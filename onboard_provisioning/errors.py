"""Exception hierarchy for the provisioning workflow."""
from __future__ import annotations


class ProvisioningError(RuntimeError):
    """Base exception for errors that stop a provisioning run."""


class DirectoryUnavailableError(ProvisioningError):
    """Raised when the identity store cannot be reached before any mutation."""


class LicenseSkuNotFoundError(ProvisioningError):
    """Raised when a required license SKU is not subscribed in the tenant."""

    def __init__(self, sku: str) -> None:
        super().__init__(f"License SKU '{sku}' does not exist in this tenant.")
        self.sku = sku


class LicenseSeatsExhaustedError(ProvisioningError):
    """Raised when a required license SKU has no available seats."""

    def __init__(self, sku: str, total: int, consumed: int) -> None:
        super().__init__(
            f"No available seats for license SKU '{sku}' ({consumed} of {total} consumed)."
        )
        self.sku = sku
        self.total = total
        self.consumed = consumed


class IdentifierExhaustedError(ProvisioningError):
    """Raised when every candidate identifier was rejected by the operator."""


__all__ = [
    "DirectoryUnavailableError",
    "IdentifierExhaustedError",
    "LicenseSeatsExhaustedError",
    "LicenseSkuNotFoundError",
    "ProvisioningError",
]
