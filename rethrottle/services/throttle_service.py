"""Throttle decision engine.

Given a client key, the engine consults the counter store, compares the hit
count against the configured budget, records the hit and reports Accept or
Reject. The middleware entry point then dispatches to exactly one of the
configured outcome handlers.

Counting modes:
- two_step: GET count, then INCREMENT and EXPIRE as separate round-trips.
  Concurrent requests from one client may both read a count below the limit
  and be admitted, so a window can admit slightly more than the budget.
- atomic: a single store call compares, increments and refreshes the expiry.

Every accepted request pushes the window end forward by
``interval_in_seconds``; rejected requests leave the record untouched.

Store failures are soft: the decision falls back to the configured failure
policy (open accepts, closed rejects) and the request pipeline keeps moving.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from fastapi import Request, Response
from fastapi.responses import PlainTextResponse

from rethrottle.adapters.counter_store.base import AbstractCounterStore
from rethrottle.adapters.counter_store.factory import create_counter_store
from rethrottle.core.config import (
    DEFAULT_BUSY_MESSAGE,
    Settings,
    ThrottleSettings,
    parse_exempt_paths,
    settings,
)
from rethrottle.core.errors import StoreAppError, ValidationAppError
from rethrottle.core.throttle import build_client_key, hash_client_key

logger = logging.getLogger(__name__)


CallNext = Callable[[Request], Awaitable[Response]]
ThrottleHandler = Callable[[Request, CallNext], Awaitable[Response]]


class Outcome(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


class FailurePolicy(str, Enum):
    """What to do with a request when the counter store fails."""

    OPEN = "open"
    CLOSED = "closed"


class CountingMode(str, Enum):
    TWO_STEP = "two_step"
    ATOMIC = "atomic"


async def continue_request(request: Request, call_next: CallNext) -> Response:
    """Default success handler: pass the request on unmodified."""
    return await call_next(request)


def busy_response_handler(
    status_code: int = 503,
    message: str = DEFAULT_BUSY_MESSAGE,
) -> ThrottleHandler:
    """Build a failure handler answering with a fixed plain-text response.

    Args:
        status_code: HTTP status of the rejection.
        message: Plain-text body of the rejection.

    Returns:
        ThrottleHandler that never calls the next pipeline stage.
    """

    async def reject_busy(request: Request, call_next: CallNext) -> Response:
        return PlainTextResponse(message, status_code=status_code)

    return reject_busy


reject_busy = busy_response_handler()


@dataclass(frozen=True)
class ThrottleConfig:
    """Immutable snapshot of the throttle policy.

    Attributes:
        max_requests_per_interval: Requests accepted per client per window.
        interval_in_seconds: Window length, refreshed on every accepted request.
        success_handler: Invoked on Accept with (request, call_next).
        failure_handler: Invoked on Reject with (request, call_next).
        failure_policy: Outcome when the store fails.
        counting_mode: two_step (read, then write) or atomic.
    """

    max_requests_per_interval: int = 10
    interval_in_seconds: int = 1
    success_handler: ThrottleHandler = continue_request
    failure_handler: ThrottleHandler = reject_busy
    failure_policy: FailurePolicy = FailurePolicy.OPEN
    counting_mode: CountingMode = CountingMode.TWO_STEP

    def __post_init__(self) -> None:
        # Accept plain strings from settings and configure() callers.
        for name, enum_cls in (("failure_policy", FailurePolicy), ("counting_mode", CountingMode)):
            object.__setattr__(self, name, _coerce_enum(enum_cls, name, getattr(self, name)))
        self._validate()

    def _validate(self) -> None:
        for name in ("max_requests_per_interval", "interval_in_seconds"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValidationAppError(
                    code="throttle_invalid_config",
                    message=f"{name} must be a positive integer, got {value!r}",
                    details={"field": name},
                )
        for name in ("success_handler", "failure_handler"):
            if not callable(getattr(self, name)):
                raise ValidationAppError(
                    code="throttle_invalid_config",
                    message=f"{name} must be callable",
                    details={"field": name},
                )

    @classmethod
    def from_settings(cls, throttle_settings: ThrottleSettings) -> "ThrottleConfig":
        """Build a config snapshot from environment settings."""
        return cls(
            max_requests_per_interval=throttle_settings.max_requests_per_interval,
            interval_in_seconds=throttle_settings.interval_in_seconds,
            failure_handler=busy_response_handler(
                throttle_settings.busy_status_code,
                throttle_settings.busy_message,
            ),
            failure_policy=FailurePolicy(throttle_settings.failure_policy),
            counting_mode=CountingMode(throttle_settings.counting_mode),
        )

    def merged(self, overrides: Mapping[str, Any]) -> "ThrottleConfig":
        """Return a copy with only the supplied fields replaced.

        Raises:
            ValidationAppError: On unknown fields or invalid values.
        """
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValidationAppError(
                code="throttle_unknown_option",
                message=f"Unknown throttle option(s): {', '.join(unknown)}",
                details={"field": unknown[0]},
            )
        if not overrides:
            return self
        return replace(self, **overrides)


def _coerce_enum(enum_cls: type[Enum], name: str, value: Any) -> Any:
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationAppError(
            code="throttle_invalid_config",
            message=f"{name} must be one of: {allowed}; got {value!r}",
            details={"field": name},
        ) from exc


@dataclass(frozen=True)
class ThrottleDecision:
    """Outcome of a single throttle decision.

    Attributes:
        outcome: Accept or Reject.
        hits: Hit count observed (after counting, when accepted).
        limit: Budget the decision was made against.
        degraded: True when the store failed and the failure policy decided.
    """

    outcome: Outcome
    hits: int
    limit: int
    degraded: bool = False

    @property
    def accepted(self) -> bool:
        return self.outcome is Outcome.ACCEPT


class ThrottleEngine:
    """Per-client fixed-window throttle backed by an expiring counter store.

    The engine owns its config snapshot and its store; several independently
    configured engines can coexist in one process.
    """

    def __init__(
        self,
        store: AbstractCounterStore,
        config: ThrottleConfig | None = None,
        *,
        key_prefix: str = "",
        exempt_paths: frozenset[str] | set[str] = frozenset(),
        enabled: bool = True,
    ) -> None:
        self._store = store
        self._config = config or ThrottleConfig()
        self._key_prefix = key_prefix
        self._exempt_paths = frozenset(exempt_paths)
        self._enabled = enabled

    @property
    def config(self) -> ThrottleConfig:
        return self._config

    @property
    def store(self) -> AbstractCounterStore:
        return self._store

    @property
    def enabled(self) -> bool:
        return self._enabled

    def configure(self, overrides: Mapping[str, Any] | None = None, **options: Any) -> ThrottleConfig:
        """Merge the supplied options into the current config.

        Unspecified options keep their values; ``configure({})`` changes
        nothing. The new snapshot applies to decisions that start after this
        call returns.

        Args:
            overrides: Mapping of option name to value.
            **options: Same, as keyword arguments (win over ``overrides``).

        Returns:
            ThrottleConfig: The config now in effect.

        Raises:
            ValidationAppError: On unknown options or invalid values.
        """
        merged_options = {**(overrides or {}), **options}
        self._config = self._config.merged(merged_options)
        if merged_options:
            logger.info(
                "throttle.configured",
                extra={
                    "options": sorted(merged_options),
                    "limit": self._config.max_requests_per_interval,
                    "window_s": self._config.interval_in_seconds,
                    "failure_policy": self._config.failure_policy.value,
                    "counting_mode": self._config.counting_mode.value,
                },
            )
        return self._config

    async def start(self) -> None:
        """Connect the counter store before serving traffic.

        Raises:
            StoreAppError: When the store cannot be reached.
        """
        await self._store.connect()

    async def close(self) -> None:
        await self._store.close()

    async def decide(self, client_key: str) -> ThrottleDecision:
        """Count a request for client_key and decide Accept or Reject."""
        return await self._decide(client_key, self._config)

    async def _decide(self, client_key: str, config: ThrottleConfig) -> ThrottleDecision:
        limit = config.max_requests_per_interval

        # Lazy connect when start() was skipped or an earlier attempt failed.
        if not self._store.connected:
            try:
                await self._store.connect()
            except StoreAppError as exc:
                return self._degraded(client_key, config, exc)

        if config.counting_mode is CountingMode.ATOMIC:
            try:
                result = await self._store.acquire(client_key, limit, config.interval_in_seconds)
            except StoreAppError as exc:
                return self._degraded(client_key, config, exc)
            outcome = Outcome.ACCEPT if result.admitted else Outcome.REJECT
            return self._decided(client_key, config, outcome, result.count)

        try:
            hits = await self._store.get_count(client_key)
        except StoreAppError as exc:
            return self._degraded(client_key, config, exc)

        if hits >= limit:
            return self._decided(client_key, config, Outcome.REJECT, hits)

        counted = hits + 1
        try:
            counted = await self._store.increment(client_key)
            await self._store.refresh_expiry(client_key, config.interval_in_seconds)
        except StoreAppError as exc:
            # The read succeeded and admitted the request; a lost write only
            # under-counts this hit.
            logger.warning(
                "throttle.store_write_failed",
                extra={
                    "key_hash": hash_client_key(client_key),
                    "error_code": exc.code,
                    "operation": (exc.details or {}).get("operation"),
                },
            )
        return self._decided(client_key, config, Outcome.ACCEPT, counted)

    def _decided(
        self,
        client_key: str,
        config: ThrottleConfig,
        outcome: Outcome,
        hits: int,
    ) -> ThrottleDecision:
        log_extra = {
            "key_hash": hash_client_key(client_key),
            "hits": hits,
            "limit": config.max_requests_per_interval,
            "window_s": config.interval_in_seconds,
            "counting_mode": config.counting_mode.value,
        }
        if outcome is Outcome.ACCEPT:
            logger.info("throttle.accepted", extra=log_extra)
        else:
            logger.warning("throttle.rejected", extra=log_extra)
        return ThrottleDecision(outcome=outcome, hits=hits, limit=config.max_requests_per_interval)

    def _degraded(self, client_key: str, config: ThrottleConfig, exc: StoreAppError) -> ThrottleDecision:
        outcome = Outcome.ACCEPT if config.failure_policy is FailurePolicy.OPEN else Outcome.REJECT
        logger.error(
            "throttle.store_degraded",
            extra={
                "key_hash": hash_client_key(client_key),
                "error_code": exc.code,
                "failure_policy": config.failure_policy.value,
                "outcome": outcome.value,
            },
        )
        return ThrottleDecision(
            outcome=outcome,
            hits=0,
            limit=config.max_requests_per_interval,
            degraded=True,
        )

    async def throttle(self, request: Request, call_next: CallNext) -> Response:
        """HTTP middleware entry point.

        Usage:
            app.middleware("http")(engine.throttle)
        """
        if not self._enabled or request.url.path in self._exempt_paths:
            return await call_next(request)

        config = self._config
        client_key = build_client_key(request, self._key_prefix)
        decision = await self._decide(client_key, config)

        if decision.accepted:
            return await config.success_handler(request, call_next)
        return await config.failure_handler(request, call_next)


def build_throttle_engine(
    app_settings: Settings | None = None,
    store: AbstractCounterStore | None = None,
) -> ThrottleEngine:
    """Build an engine from settings.

    Args:
        app_settings: Settings container; defaults to global settings.
        store: Counter store to use; defaults to the STORE_BACKEND store.

    Returns:
        ThrottleEngine: Engine whose store is not connected yet.
    """
    cfg = app_settings or settings
    return ThrottleEngine(
        store or create_counter_store(cfg.store),
        ThrottleConfig.from_settings(cfg.throttle),
        key_prefix=cfg.throttle.key_prefix,
        exempt_paths=parse_exempt_paths(cfg.throttle.exempt_paths),
        enabled=cfg.throttle.enabled,
    )
