from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from rethrottle.core.throttle import get_throttle_engine
from rethrottle.services.throttle_service import ThrottleEngine

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(engine: Annotated[ThrottleEngine, Depends(get_throttle_engine)]) -> dict:
    """Health check endpoint.

    Reports the process as up even when the counter store is down, since
    throttling degrades to its failure policy instead of failing requests.

    Returns:
        dict: "status" plus the store connection state.
    """

    return {
        "status": "ok",
        "throttle_enabled": engine.enabled,
        "store_connected": engine.store.connected,
    }
