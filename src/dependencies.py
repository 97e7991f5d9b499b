"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.services.engine import ActivityEngine


def get_engine(request: Request) -> ActivityEngine:
    """Return the engine built by the app lifespan.

    The lifespan stores it on ``app.state.engine`` before routes run.
    """
    engine: ActivityEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return engine


# Annotated shortcuts for route signatures
Engine = Annotated[ActivityEngine, Depends(get_engine)]
AppSettings = Annotated[Settings, Depends(get_settings)]
