"""Counter store interfaces.

The throttle engine depends on this abstraction rather than on Redis so the
backend can be swapped (in-memory for development, Redis in production)
without touching the decision logic.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class AcquireResult:
    """Result of an atomic acquire.

    Attributes:
        admitted: Whether the hit was counted (count was below the limit).
        count: Hit count after the operation.
    """

    admitted: bool
    count: int


class AbstractCounterStore(ABC):
    """Interface for expiring per-key hit counters.

    Implementations raise StoreAppError on any failure; they never decide
    whether a request is accepted.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection. Calling it again is a no-op."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Release the connection."""
        raise NotImplementedError

    @abstractmethod
    async def get_count(self, key: str) -> int:
        """Return the current hit count for key (0 when absent)."""
        raise NotImplementedError

    @abstractmethod
    async def increment(self, key: str) -> int:
        """Increment the hit count for key and return the new value."""
        raise NotImplementedError

    @abstractmethod
    async def refresh_expiry(self, key: str, seconds: int) -> None:
        """(Re)set the time-to-live of key to seconds from now."""
        raise NotImplementedError

    @abstractmethod
    async def acquire(self, key: str, limit: int, seconds: int) -> AcquireResult:
        """Atomically count a hit when below limit and refresh its expiry.

        Args:
            key: Client key.
            limit: Maximum hits allowed while the key is alive.
            seconds: Time-to-live applied when the hit is admitted.

        Returns:
            AcquireResult describing whether the hit was admitted.
        """
        raise NotImplementedError

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Whether connect() completed successfully."""
        raise NotImplementedError
