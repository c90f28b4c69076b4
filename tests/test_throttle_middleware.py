"""Integration tests for the throttle middleware through the FastAPI app."""

from __future__ import annotations

from unittest.mock import Mock

import pytest
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from rethrottle.adapters.counter_store.in_memory import InMemoryCounterStore
from rethrottle.core.app_factory import create_app
from rethrottle.core.config import DEFAULT_BUSY_MESSAGE
from rethrottle.core.errors import StoreAppError
from rethrottle.services.throttle_service import ThrottleConfig, ThrottleEngine


class UnreachableStore(InMemoryCounterStore):
    """Store whose server never answers."""

    async def connect(self) -> None:
        raise StoreAppError(code="store_unavailable", message="Connection refused")


def _engine(store: InMemoryCounterStore, **config) -> ThrottleEngine:
    return ThrottleEngine(
        store,
        ThrottleConfig(**config),
        key_prefix="ip:",
        exempt_paths={"/health"},
    )


def test_default_rejection_is_503_plain_text(memory_store: InMemoryCounterStore) -> None:
    app = create_app(engine=_engine(memory_store, max_requests_per_interval=1))

    with TestClient(app) as client:
        assert client.get("/").status_code == 200
        resp = client.get("/")

    assert resp.status_code == 503
    assert resp.text == DEFAULT_BUSY_MESSAGE
    assert resp.headers["content-type"].startswith("text/plain")


def test_one_request_per_ten_seconds(memory_store: InMemoryCounterStore, clock: Mock) -> None:
    app = create_app(
        engine=_engine(memory_store, max_requests_per_interval=1, interval_in_seconds=10)
    )

    with TestClient(app) as client:
        statuses = [client.get("/").status_code for _ in range(3)]
        clock.return_value += 10
        statuses.append(client.get("/").status_code)

    assert statuses == [200, 503, 503, 200]


def test_accepted_request_reaches_route(memory_store: InMemoryCounterStore) -> None:
    app = create_app(engine=_engine(memory_store))

    with TestClient(app) as client:
        resp = client.get("/")

    assert resp.status_code == 200
    assert resp.text == "Hello World!"
    assert memory_store.connected is True


def test_custom_failure_handler_replaces_default(memory_store: InMemoryCounterStore) -> None:
    calls: list[str] = []

    async def check_back_later(request: Request, call_next) -> JSONResponse:
        calls.append(request.url.path)
        return JSONResponse({"detail": "Check back later..."}, status_code=429)

    engine = _engine(memory_store, max_requests_per_interval=1)
    engine.configure(failure_handler=check_back_later)
    app = create_app(engine=engine)

    with TestClient(app) as client:
        client.get("/")
        resp = client.get("/")

    assert resp.status_code == 429
    assert resp.json() == {"detail": "Check back later..."}
    assert DEFAULT_BUSY_MESSAGE not in resp.text
    assert calls == ["/"]


def test_custom_success_handler_can_decorate_response(memory_store: InMemoryCounterStore) -> None:
    async def tag_passed(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Throttle"] = "passed"
        return response

    app = create_app(engine=_engine(memory_store, success_handler=tag_passed))

    with TestClient(app) as client:
        resp = client.get("/")

    assert resp.status_code == 200
    assert resp.headers["X-Throttle"] == "passed"


def test_exempt_path_is_never_throttled(memory_store: InMemoryCounterStore) -> None:
    app = create_app(engine=_engine(memory_store, max_requests_per_interval=1))

    with TestClient(app) as client:
        statuses = [client.get("/health").status_code for _ in range(5)]

    assert statuses == [200] * 5


def test_disabled_engine_passes_everything(memory_store: InMemoryCounterStore) -> None:
    engine = ThrottleEngine(memory_store, ThrottleConfig(max_requests_per_interval=1), enabled=False)
    app = create_app(engine=engine)

    with TestClient(app) as client:
        statuses = [client.get("/").status_code for _ in range(3)]

    assert statuses == [200, 200, 200]


def test_store_outage_degrades_to_no_throttling(clock: Mock) -> None:
    app = create_app(engine=_engine(UnreachableStore(clock=clock), max_requests_per_interval=1))

    # No lifespan: the engine connects lazily and fails open on every request
    client = TestClient(app)
    statuses = [client.get("/").status_code for _ in range(3)]

    assert statuses == [200, 200, 200]


def test_store_outage_with_fail_closed_rejects(clock: Mock) -> None:
    app = create_app(
        engine=_engine(UnreachableStore(clock=clock), failure_policy="closed")
    )

    client = TestClient(app)
    resp = client.get("/")

    assert resp.status_code == 503


def test_unreachable_store_aborts_startup(clock: Mock) -> None:
    app = create_app(engine=_engine(UnreachableStore(clock=clock)))

    with pytest.raises(StoreAppError):
        with TestClient(app):
            pass


def test_rejected_response_carries_request_id(memory_store: InMemoryCounterStore) -> None:
    app = create_app(engine=_engine(memory_store, max_requests_per_interval=1))

    with TestClient(app) as client:
        client.get("/")
        resp = client.get("/", headers={"X-Request-ID": "req-throttled-1"})

    assert resp.status_code == 503
    assert resp.headers["X-Request-ID"] == "req-throttled-1"


def test_health_reports_store_state(memory_store: InMemoryCounterStore) -> None:
    app = create_app(engine=_engine(memory_store))

    with TestClient(app) as client:
        body = client.get("/health").json()

    assert body == {"status": "ok", "throttle_enabled": True, "store_connected": True}
