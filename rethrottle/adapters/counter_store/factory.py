"""Factory for creating counter store instances."""

from rethrottle.adapters.counter_store.base import AbstractCounterStore
from rethrottle.adapters.counter_store.in_memory import InMemoryCounterStore
from rethrottle.adapters.counter_store.redis_store import RedisCounterStore
from rethrottle.core.config import StoreSettings, settings
from rethrottle.core.errors import ValidationAppError


def create_counter_store(store_settings: StoreSettings | None = None) -> AbstractCounterStore:
    """Instantiate the counter store selected by STORE_BACKEND.

    Args:
        store_settings: Optional store settings; defaults to global settings.

    Returns:
        AbstractCounterStore: Unconnected store instance.

    Raises:
        ValidationAppError: If the backend name is not supported.
    """
    cfg = store_settings or settings.store
    backend = cfg.backend.lower()

    if backend == "redis":
        return RedisCounterStore(
            host=cfg.host,
            port=cfg.port,
            db=cfg.db,
            password=cfg.password,
            max_memory_bytes=cfg.max_memory_bytes,
            eviction_policy=cfg.eviction_policy,
            disable_persistence=cfg.disable_persistence,
            configure_server=cfg.configure_server,
            socket_timeout=cfg.socket_timeout_seconds,
            connect_timeout=cfg.connect_timeout_seconds,
        )

    if backend == "memory":
        return InMemoryCounterStore()

    raise ValidationAppError(
        code="store_unknown_backend",
        message=f"Unknown counter store backend: '{backend}'. Supported backends: redis, memory",
        details={"field": "backend"},
    )
