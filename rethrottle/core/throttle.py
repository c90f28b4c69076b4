"""Throttle wiring for the HTTP layer.

This module holds the small pieces shared between the throttle engine and
the FastAPI app:
- client key derivation from the connection's remote address
- key hashing so logs never carry raw addresses
- access to the engine instance stored on app.state

Clients behind a shared proxy address collapse into one counter. That is a
known limitation of keying on the remote address.
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
    from rethrottle.services.throttle_service import ThrottleEngine


UNKNOWN_CLIENT = "unknown"


def build_client_key(request: Request, prefix: str = "") -> str:
    """Build the counter key for the current request.

    Args:
        request: Incoming request.
        prefix: Namespace prepended to the key in the store.

    Returns:
        str: Namespaced client key.
    """

    client_host = request.client.host if request.client else None
    return f"{prefix}{client_host or UNKNOWN_CLIENT}"


def hash_client_key(key: str) -> str:
    """Hash the client key for logging without exposing addresses."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


def get_throttle_engine(request: Request) -> "ThrottleEngine":
    """FastAPI dependency returning the app's throttle engine.

    Raises:
        RuntimeError: If the app was built without a throttle engine.
    """

    engine = getattr(request.app.state, "throttle_engine", None)
    if engine is None:
        raise RuntimeError("Throttle engine is not configured on this application")
    return engine
