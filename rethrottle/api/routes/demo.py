from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

router = APIRouter(tags=["Demo"])


@router.get("/", response_class=PlainTextResponse)
def hello() -> str:
    """Throttled sample endpoint."""

    return "Hello World!"
