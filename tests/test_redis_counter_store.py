"""Unit tests for the Redis counter store adapter (mocked redis client)."""

from unittest.mock import AsyncMock, Mock, call, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from rethrottle.adapters.counter_store import redis_store
from rethrottle.adapters.counter_store.redis_store import HITS_FIELD, RedisCounterStore
from rethrottle.core.errors import StoreAppError


@pytest.fixture
def script() -> AsyncMock:
    return AsyncMock(return_value=[1, 1])


@pytest.fixture
def redis_client(script: AsyncMock) -> AsyncMock:
    client = AsyncMock()
    client.register_script = Mock(return_value=script)
    client.ping.return_value = True
    return client


@pytest.fixture
def store(redis_client: AsyncMock) -> RedisCounterStore:
    return RedisCounterStore(port=6380, max_memory_bytes=2000, client=redis_client)


class TestConnect:
    """Connection setup and server tuning."""

    @pytest.mark.asyncio
    async def test_configures_volatile_cache(self, store, redis_client) -> None:
        await store.connect()

        redis_client.ping.assert_awaited_once()
        redis_client.config_set.assert_has_awaits(
            [
                call("maxmemory", 2000),
                call("maxmemory-policy", "volatile-lru"),
                call("save", ""),
            ]
        )
        assert store.connected is True

    @pytest.mark.asyncio
    async def test_second_connect_is_noop(self, store, redis_client) -> None:
        await store.connect()
        await store.connect()

        redis_client.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unreachable_store_raises(self, store, redis_client) -> None:
        redis_client.ping.side_effect = RedisConnectionError("Connection refused")

        with pytest.raises(StoreAppError) as exc_info:
            await store.connect()

        assert exc_info.value.code == "store_unavailable"
        assert store.connected is False

    @pytest.mark.asyncio
    async def test_rejected_config_is_not_fatal(self, store, redis_client) -> None:
        redis_client.config_set.side_effect = ResponseError("unknown command 'CONFIG'")

        await store.connect()

        assert store.connected is True

    @pytest.mark.asyncio
    async def test_transport_error_during_config_is_unavailable(self, store, redis_client) -> None:
        redis_client.config_set.side_effect = RedisTimeoutError("Timeout reading from socket")

        with pytest.raises(StoreAppError) as exc_info:
            await store.connect()

        assert exc_info.value.code == "store_unavailable"
        assert store.connected is False

    @pytest.mark.asyncio
    async def test_server_config_can_be_skipped(self, redis_client) -> None:
        store = RedisCounterStore(configure_server=False, client=redis_client)

        await store.connect()

        redis_client.config_set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persistence_kept_when_requested(self, redis_client) -> None:
        store = RedisCounterStore(disable_persistence=False, client=redis_client)

        await store.connect()

        names = [c.args[0] for c in redis_client.config_set.await_args_list]
        assert "save" not in names

    @pytest.mark.asyncio
    async def test_close_releases_client(self, store, redis_client) -> None:
        await store.connect()
        await store.close()

        redis_client.aclose.assert_awaited_once()
        assert store.connected is False


class TestCounterCommands:
    """Hit counter reads and writes."""

    @pytest.mark.asyncio
    async def test_get_count_reads_hits_field(self, store, redis_client) -> None:
        redis_client.hget.return_value = "7"

        assert await store.get_count("ip:1.2.3.4") == 7
        redis_client.hget.assert_awaited_once_with("ip:1.2.3.4", HITS_FIELD)

    @pytest.mark.asyncio
    async def test_get_count_absent_is_zero(self, store, redis_client) -> None:
        redis_client.hget.return_value = None

        assert await store.get_count("k") == 0

    @pytest.mark.asyncio
    async def test_increment_and_expire(self, store, redis_client) -> None:
        redis_client.hincrby.return_value = 3

        assert await store.increment("k") == 3
        await store.refresh_expiry("k", 10)

        redis_client.hincrby.assert_awaited_once_with("k", HITS_FIELD, 1)
        redis_client.expire.assert_awaited_once_with("k", 10)

    @pytest.mark.asyncio
    async def test_command_failure_raises_store_error(self, store, redis_client, caplog) -> None:
        redis_client.hget.side_effect = RedisConnectionError("Connection reset by peer")

        with caplog.at_level("ERROR"):
            with pytest.raises(StoreAppError) as exc_info:
                await store.get_count("k")

        assert exc_info.value.code == "store_operation_failed"
        assert exc_info.value.details == {"operation": "get_count"}
        assert any(r.getMessage() == "counter_store.error" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_acquire_runs_script(self, store, redis_client, script) -> None:
        script.return_value = [0, 5]
        await store.connect()

        result = await store.acquire("k", 5, 10)

        script.assert_awaited_once_with(keys=["k"], args=[5, 10])
        assert result.admitted is False
        assert result.count == 5

    @pytest.mark.asyncio
    async def test_acquire_failure_raises_store_error(self, store, script) -> None:
        script.side_effect = RedisConnectionError("timeout")

        with pytest.raises(StoreAppError):
            await store.acquire("k", 5, 10)


class TestClientConstruction:
    """Client options derived from the store settings."""

    def test_client_never_retries(self) -> None:
        store = RedisCounterStore(host="cache", port=6380, socket_timeout=0.25, connect_timeout=0.1)

        with patch.object(redis_store.redis_asyncio, "Redis") as redis_cls:
            store._client()

        kwargs = redis_cls.call_args.kwargs
        assert kwargs["retry"]._retries == 0
        assert kwargs["socket_timeout"] == 0.25
        assert kwargs["socket_connect_timeout"] == 0.1
        assert kwargs["decode_responses"] is True

    def test_client_is_built_once(self) -> None:
        store = RedisCounterStore()

        with patch.object(redis_store.redis_asyncio, "Redis") as redis_cls:
            first = store._client()
            second = store._client()

        assert first is second
        redis_cls.assert_called_once()
