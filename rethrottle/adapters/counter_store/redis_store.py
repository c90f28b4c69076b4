"""Redis-backed counter store.

Hit counts live in a hash per client key (field ``hits``) whose key TTL is
the throttle window. The Redis server is treated as a volatile cache: on
connect it is capped in memory with an LRU policy over expiring keys and
snapshotting to disk is turned off.

Every failing command is reported to the error observer (a structured log
record) and raised as StoreAppError; the caller decides what a failure means
for the request.
"""

from __future__ import annotations

import logging
from typing import Any

import redis.asyncio as redis_asyncio
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import RedisError, ResponseError

from rethrottle.adapters.counter_store.base import AbstractCounterStore, AcquireResult
from rethrottle.core.errors import StoreAppError

logger = logging.getLogger(__name__)

HITS_FIELD = "hits"

# KEYS[1] = client key, ARGV[1] = limit, ARGV[2] = ttl seconds.
# Returns {admitted (0/1), count}.
ACQUIRE_SCRIPT = """
local hits = tonumber(redis.call('HGET', KEYS[1], 'hits') or '0')
if hits >= tonumber(ARGV[1]) then
    return {0, hits}
end
hits = redis.call('HINCRBY', KEYS[1], 'hits', 1)
redis.call('EXPIRE', KEYS[1], ARGV[2])
return {1, hits}
"""


class RedisCounterStore(AbstractCounterStore):
    """Counter store using the redis-py asyncio client."""

    def __init__(
        self,
        *,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: str | None = None,
        max_memory_bytes: int = 100 * 1024 * 1024,
        eviction_policy: str = "volatile-lru",
        disable_persistence: bool = True,
        configure_server: bool = True,
        socket_timeout: float | None = 0.5,
        connect_timeout: float | None = 0.5,
        client: redis_asyncio.Redis | None = None,
    ) -> None:
        """Initialize the store. No network I/O happens until connect().

        Args:
            host: Redis host.
            port: Redis port.
            db: Logical database index.
            password: Optional Redis password.
            max_memory_bytes: Value for CONFIG SET maxmemory.
            eviction_policy: Value for CONFIG SET maxmemory-policy.
            disable_persistence: Issue CONFIG SET save "" on connect.
            configure_server: Skip all CONFIG SET calls when False.
            socket_timeout: Bound on a single command round-trip.
            connect_timeout: Bound on establishing the TCP connection.
            client: Pre-built client (tests, shared pools).
        """
        self._host = host
        self._port = port
        self._db = db
        self._password = password
        self._max_memory_bytes = max_memory_bytes
        self._eviction_policy = eviction_policy
        self._disable_persistence = disable_persistence
        self._configure_server = configure_server
        self._socket_timeout = socket_timeout
        self._connect_timeout = connect_timeout

        self._redis: redis_asyncio.Redis | None = client
        self._acquire_script: Any = None
        self._connected = False

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"RedisCounterStore(host={self._host!r}, port={self._port}, db={self._db}, "
            f"connected={self._connected})"
        )

    @property
    def connected(self) -> bool:
        return self._connected

    def _on_error(self, operation: str, exc: Exception, key: str | None = None) -> StoreAppError:
        """Error observer: log the failure and build the error to raise."""
        logger.error(
            "counter_store.error",
            extra={
                "operation": operation,
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
                "store_host": self._host,
                "store_port": self._port,
                "has_key": key is not None,
            },
        )
        return StoreAppError(
            code="store_operation_failed",
            message=f"Counter store {operation} failed: {exc}",
            details={"operation": operation},
        )

    def _unavailable(self, step: str, exc: Exception) -> StoreAppError:
        """Log a failed connect step and build the error to raise."""
        logger.error(
            "counter_store.unreachable",
            extra={
                "step": step,
                "store_host": self._host,
                "store_port": self._port,
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
            },
        )
        return StoreAppError(
            code="store_unavailable",
            message=f"Counter store at {self._host}:{self._port} is unreachable",
            details={"operation": "connect", "hint": "Check STORE_HOST/STORE_PORT"},
        )

    def _client(self) -> redis_asyncio.Redis:
        if self._redis is None:
            self._redis = redis_asyncio.Redis(
                host=self._host,
                port=self._port,
                db=self._db,
                password=self._password,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._connect_timeout,
                # One round-trip per command; the throttle never retries.
                retry=Retry(NoBackoff(), 0),
                decode_responses=True,
            )
        return self._redis

    async def connect(self) -> None:
        """Connect, verify reachability and tune the server.

        Raises:
            StoreAppError: When the server cannot be reached.
        """
        if self._connected:
            return

        client = self._client()
        try:
            await client.ping()
        except (RedisError, OSError) as exc:
            raise self._unavailable("ping", exc) from exc

        if self._configure_server:
            await self._apply_server_config(client)

        self._acquire_script = client.register_script(ACQUIRE_SCRIPT)
        self._connected = True
        logger.info(
            "counter_store.connected",
            extra={"store_host": self._host, "store_port": self._port, "store_db": self._db},
        )

    async def _apply_server_config(self, client: redis_asyncio.Redis) -> None:
        settings_to_apply: list[tuple[str, Any]] = [
            ("maxmemory", self._max_memory_bytes),
            ("maxmemory-policy", self._eviction_policy),
        ]
        if self._disable_persistence:
            settings_to_apply.append(("save", ""))

        for name, value in settings_to_apply:
            try:
                await client.config_set(name, value)
            except ResponseError as exc:
                # Managed Redis offerings commonly disable CONFIG.
                logger.warning(
                    "counter_store.config_rejected",
                    extra={"config_name": name, "error_msg": str(exc)},
                )
            except (RedisError, OSError) as exc:
                raise self._unavailable(f"config_set {name}", exc) from exc

    async def close(self) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("counter_store.close_failed", extra={"error_msg": str(exc)})
        finally:
            self._redis = None
            self._acquire_script = None
            self._connected = False
            logger.debug("counter_store.closed")

    async def get_count(self, key: str) -> int:
        try:
            hits = await self._client().hget(key, HITS_FIELD)
        except (RedisError, OSError) as exc:
            raise self._on_error("get_count", exc, key) from exc
        return int(hits or 0)

    async def increment(self, key: str) -> int:
        try:
            return int(await self._client().hincrby(key, HITS_FIELD, 1))
        except (RedisError, OSError) as exc:
            raise self._on_error("increment", exc, key) from exc

    async def refresh_expiry(self, key: str, seconds: int) -> None:
        try:
            await self._client().expire(key, seconds)
        except (RedisError, OSError) as exc:
            raise self._on_error("refresh_expiry", exc, key) from exc

    async def acquire(self, key: str, limit: int, seconds: int) -> AcquireResult:
        if self._acquire_script is None:
            self._acquire_script = self._client().register_script(ACQUIRE_SCRIPT)
        try:
            admitted, count = await self._acquire_script(keys=[key], args=[limit, seconds])
        except (RedisError, OSError) as exc:
            raise self._on_error("acquire", exc, key) from exc
        return AcquireResult(admitted=bool(int(admitted)), count=int(count))
