"""Leaderboard activity sync API: FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.activity_sync.errors import IncompleteData, UpstreamError, UpstreamRateLimited
from src.config import get_settings
from src.models.base import ErrorDetail
from src.models.sync import IncompleteRead
from src.routers import health, sync
from src.services.engine import build_engine

# ---------- Logging ----------

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("leaderboard")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting %s v%s [%s]",
        settings.app_name,
        settings.app_version,
        settings.environment,
    )
    engine = await build_engine(settings)
    app.state.engine = engine
    if settings.scheduler_autostart:
        await engine.scheduler.start()
    yield
    await engine.aclose()
    app.state.engine = None
    logger.info("%s shut down", settings.app_name)


# ---------- Error mapping ----------

async def incomplete_data_handler(request: Request, exc: IncompleteData) -> JSONResponse:
    body = IncompleteRead(detail=str(exc), missing=exc.missing, complete=exc.complete)
    return JSONResponse(status_code=409, content=body.model_dump(mode="json"))


async def rate_limited_handler(request: Request, exc: UpstreamRateLimited) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content=ErrorDetail(detail=str(exc)).model_dump(),
        headers={"Retry-After": "10"},
    )


async def upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    logger.warning("Upstream failure surfaced to %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content=ErrorDetail(detail=str(exc)).model_dump())


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description=(
            "Rate-limited mirror of CRM activity time into day buckets, "
            "and deals-per-hour derived from it."
        ),
        version=settings.app_version,
        debug=settings.debug,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_exception_handler(IncompleteData, incomplete_data_handler)
    app.add_exception_handler(UpstreamRateLimited, rate_limited_handler)
    app.add_exception_handler(UpstreamError, upstream_error_handler)

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(sync.router, prefix=v1_prefix)

    return app


app = create_app()
