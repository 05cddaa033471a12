"""forge.core.exceptions

Errors are part of the interface.

A duplicate delivery is not an error. A mismatched one is.
"""

from __future__ import annotations


class SolarForgeError(Exception):
    """Base exception for solar-forge."""


class ConfigError(SolarForgeError):
    """Configuration is missing, invalid, or inconsistent."""


class StoreError(SolarForgeError):
    """Store failures: schema, IO, integrity, or invariants."""


class StorageUnavailableError(StoreError):
    """Transient storage failure. The caller must redeliver."""


class DedupeConflictError(StoreError):
    """Leg transaction id reused with a different payload."""


class DonationError(SolarForgeError):
    """Donation correlation failures."""


class MalformedLegError(DonationError):
    """Leg payload failed schema validation at the boundary."""


class DonationNotFoundError(DonationError):
    """No donation with the requested id."""


class CorrelationConflictError(DonationError):
    """Counter already bound to a different live donation for the same user and galaxy."""

    def __init__(
        self,
        message: str,
        *,
        user_id: str,
        galaxy_id: str,
        counter: int,
        donation_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.user_id = user_id
        self.galaxy_id = galaxy_id
        self.counter = counter
        self.donation_id = donation_id


class CorrelationAnomalyError(DonationError):
    """A leg contradicts what is already recorded. Possible replay or counter reuse."""

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        leg_tx_id: str,
        donation_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.leg_tx_id = leg_tx_id
        self.donation_id = donation_id
