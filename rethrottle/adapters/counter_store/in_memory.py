"""In-memory expiring counter store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state; no await happens while the
  lock is held.
- Expired records are dropped lazily on access, mirroring Redis key TTLs.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from rethrottle.adapters.counter_store.base import AbstractCounterStore, AcquireResult


@dataclass
class _HitRecord:
    count: int
    expires_at: float | None


class InMemoryCounterStore(AbstractCounterStore):
    """Counter store keeping hit records in a dict.

    Behaves like a volatile Redis hash with a key TTL: a record without an
    expiry lives until explicitly expired, a record past its expiry reads
    as absent.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize the store.

        Args:
            clock: Time source returning seconds; injectable for tests.
        """
        self._clock = clock
        self._lock = threading.RLock()
        self._records: dict[str, _HitRecord] = {}
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        with self._lock:
            self._records.clear()
        self._connected = False

    def _live_record(self, key: str) -> _HitRecord | None:
        record = self._records.get(key)
        if record is None:
            return None
        if record.expires_at is not None and record.expires_at <= self._clock():
            del self._records[key]
            return None
        return record

    async def get_count(self, key: str) -> int:
        with self._lock:
            record = self._live_record(key)
            return record.count if record else 0

    async def increment(self, key: str) -> int:
        with self._lock:
            record = self._live_record(key)
            if record is None:
                record = _HitRecord(count=0, expires_at=None)
                self._records[key] = record
            record.count += 1
            return record.count

    async def refresh_expiry(self, key: str, seconds: int) -> None:
        with self._lock:
            record = self._live_record(key)
            # EXPIRE on a missing key is a no-op in Redis as well
            if record is not None:
                record.expires_at = self._clock() + seconds

    async def acquire(self, key: str, limit: int, seconds: int) -> AcquireResult:
        with self._lock:
            record = self._live_record(key)
            count = record.count if record else 0
            if count >= limit:
                return AcquireResult(admitted=False, count=count)

            if record is None:
                record = _HitRecord(count=0, expires_at=None)
                self._records[key] = record
            record.count += 1
            record.expires_at = self._clock() + seconds
            return AcquireResult(admitted=True, count=record.count)
