from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class ServiceError(Exception):
    """Canonical error type for season, cache, reward and payout failures."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class ValidationError(ServiceError):
    """Malformed input. Never retried."""


class MalformedEventError(ValidationError):
    """A ledger event that does not match either tagged variant."""


class InvalidTransitionError(ValidationError):
    """Season phase move that is not allowed."""


class InsufficientPowerError(ServiceError):
    pass


class SelfDelegationError(ServiceError):
    pass


class InsufficientDataError(ServiceError):
    """Fewer ranked targets than requested winners."""


class StaleCacheError(ServiceError):
    """Cache behind the ledger beyond the configured tolerance."""


class LedgerUnavailableError(ServiceError):
    """Network or RPC failure talking to the ledger."""


class PartialDistributionFailure(ServiceError):
    """Some payout rows exhausted their attempts."""


class DistributionInProgressError(ServiceError):
    pass


class LockLostError(ServiceError):
    """The distribution lock was taken over by another owner mid-run."""


class SeasonFinalizedError(ServiceError):
    """Writes against a finalized season."""


class NotFoundError(ServiceError):
    pass
