"""Shared FastAPI dependencies."""
from __future__ import annotations

from fastapi import HTTPException, Request, status

from ..core.hub import Hub


def get_hub(request: Request) -> Hub:
    hub = getattr(request.app.state, "hub", None)
    if hub is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is not started",
        )
    return hub
