"""HTTP middleware for request ID propagation and correlation.

Every response, throttled ones included, carries the request id and the
time spent in the pipeline. The id is kept in a contextvar while the
request runs, so throttle and counter store logs are correlated with it.

Usage:
    app.middleware("http")(build_request_id_middleware(settings.log))

Register it after the throttle middleware so it wraps the throttle step.
"""

from __future__ import annotations

import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response

from rethrottle.core.config import LogSettings
from rethrottle.core.logging import clear_request_id, set_request_id

CallNext = Callable[[Request], Awaitable[Response]]
Middleware = Callable[[Request, CallNext], Awaitable[Response]]

DURATION_HEADER = "X-Request-Duration-ms"


def build_request_id_middleware(log_settings: LogSettings) -> Middleware:
    """Build the request id middleware for one application.

    Args:
        log_settings: Logging settings of the app; ``request_id_header``
            names the header read from requests and echoed on responses.

    Returns:
        Middleware suitable for ``app.middleware("http")``.
    """

    header_name = log_settings.request_id_header

    async def request_id_middleware(request: Request, call_next: CallNext) -> Response:
        request_id = request.headers.get(header_name) or uuid.uuid4().hex
        started = time.perf_counter()
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_id()

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers[header_name] = request_id
        response.headers.setdefault(DURATION_HEADER, f"{elapsed_ms:.2f}")
        return response

    return request_id_middleware
