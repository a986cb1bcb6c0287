"""
FastAPI application factory for the codemap job service.

This module initializes the FastAPI application instance. It is responsible for:
1.  **Middleware Setup**: CORS for editor/web front-ends.
2.  **Exception Handling**: global handlers so all errors return structured JSON.
3.  **Routing**: mounting the codemap router and the health probe.
4.  **Lifecycle**: initializing the job store on startup.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from codemap import __version__
from codemap.api.job_store import JobStore
from codemap.api.routers import codemaps
from codemap.core.settings import get_logger, load_settings

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    ASGI lifespan: create the job store before the first request.
    """
    log.info("Codemap API starting up")
    JobStore.get_instance()
    yield
    log.info("Codemap API shutting down")


def create_app() -> FastAPI:
    """
    Construct and configure the codemap FastAPI application.

    Returns
    -------
    FastAPI
        The configured ASGI application ready to be served by Uvicorn.
    """
    app = FastAPI(
        title="Codemap API",
        description="Generate codemaps (traces, locations, diagrams) for a workspace.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Return unhandled exceptions as structured JSON (HTTP 500)."""
        log.error("Unhandled error on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "detail": str(exc),
                "path": request.url.path,
            },
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        """Map Python ValueErrors to HTTP 400 Bad Request."""
        return JSONResponse(
            status_code=400,
            content={
                "error": "Bad Request",
                "detail": str(exc),
            },
        )

    app.include_router(codemaps.router)

    @app.get("/health", tags=["System"])
    async def health_check() -> dict[str, str]:
        """Simple liveness probe."""
        return {
            "status": "ok",
            "environment": load_settings().environment,
            "version": __version__,
        }

    return app


__all__ = ["create_app"]
