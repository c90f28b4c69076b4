"""Counter store adapter layer - expiring hit counters behind one interface."""

from rethrottle.adapters.counter_store.base import AbstractCounterStore, AcquireResult
from rethrottle.adapters.counter_store.factory import create_counter_store
from rethrottle.adapters.counter_store.in_memory import InMemoryCounterStore
from rethrottle.adapters.counter_store.redis_store import RedisCounterStore

__all__ = [
    "AbstractCounterStore",
    "AcquireResult",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "create_counter_store",
]
