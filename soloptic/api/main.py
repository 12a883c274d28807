"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from soloptic import __version__
from soloptic.api.errors import register_error_handlers
from soloptic.api.middleware import RequestIDMiddleware, RequestSizeLimitMiddleware
from soloptic.api.routes import health, profiling
from soloptic.core.config import get_settings
from soloptic.core.logging import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup and shutdown events."""
    settings = get_settings()
    setup_logging(env=settings.app_env, log_level="DEBUG" if settings.debug else settings.log_level)

    logger.info(
        "Starting %s in %s mode (node %s)", settings.app_name, settings.app_env, settings.rpc_url,
    )
    yield
    logger.info("Shutting down SolOptic engine")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="SolOptic API",
        description=(
            "Per-line gas attribution for Solidity contracts.\n\n"
            "Compiles a contract, fuzzes every function against a development node, "
            "replays execution traces through the runtime source map and returns a "
            "gas heatmap."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.app_env == "production" else "/api/docs",
        redoc_url=None if settings.app_env == "production" else "/api/redoc",
        openapi_url=None if settings.app_env == "production" else "/api/openapi.json",
        openapi_tags=[
            {"name": "health", "description": "Liveness and readiness checks"},
            {"name": "profiling", "description": "Compile, fuzz, trace profiling and heatmaps"},
        ],
    )

    # ── CORS — configurable origins ──────────────────────────────────
    allowed_origins = [o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID", "Accept"],
        expose_headers=["X-Request-ID"],
    )

    # ── Middleware (outermost first) ─────────────────────────────────
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RequestSizeLimitMiddleware)

    # ── Access logging middleware ────────────────────────────────────
    @app.middleware("http")
    async def access_log(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s → %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed,
            extra={"method": request.method, "path": request.url.path,
                   "status_code": response.status_code, "duration_ms": round(elapsed, 1)},
        )
        return response

    # ── Routes ───────────────────────────────────────────────────────
    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(profiling.router, prefix="/api/v1", tags=["profiling"])

    # ── Structured error handlers ──────────────────────────────────
    register_error_handlers(app)

    return app


app = create_app()
