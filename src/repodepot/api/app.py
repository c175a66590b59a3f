"""FastAPI application factory for the orchestration server."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import anyio
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from repodepot import __version__
from repodepot.api import routes_agent, routes_progress, routes_tasks
from repodepot.api.dependencies import AppServices, build_services
from repodepot.config import Settings
from repodepot.orchestrator.errors import (
    InvalidTransitionError,
    NotFoundError,
    OrchestrationError,
    ProcessError,
    SpawnFailedError,
    ValidationError,
)
from repodepot.storage.common import utc_now

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    services: AppServices | None = None,
) -> FastAPI:
    """Build the API app.

    When ``services`` is given the caller owns them; otherwise they are built from
    ``settings`` on startup, the schema is migrated, and everything is closed on
    shutdown (running agents receive SIGTERM). Answer long-polls get their own
    thread limiter so they never hold the threads the other routes run on.
    """

    resolved_settings = settings or (services.settings if services else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned: AppServices | None = None
        app.state.answer_wait_limiter = anyio.CapacityLimiter(
            resolved_settings.clarification.max_waiters,
        )
        if app.state.services is None:
            owned = build_services(resolved_settings)
            owned.tasks.init_schema()
            app.state.services = owned
            logger.info("Orchestration API ready (db=%s)", resolved_settings.db_path)
        try:
            yield
        finally:
            if owned is not None:
                logger.info("Shutting down: stopping agents and closing storage")
                owned.close()
                app.state.services = None

    app = FastAPI(title="repodepot orchestration API", version=__version__, lifespan=lifespan)
    app.state.services = services
    app.state.answer_wait_limiter = None

    api = APIRouter(prefix="/api")

    @api.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "timestamp": utc_now().isoformat()}

    api.include_router(routes_tasks.router)
    api.include_router(routes_progress.router)
    api.include_router(routes_agent.router)
    app.include_router(api)

    @app.exception_handler(OrchestrationError)
    async def orchestration_error_handler(_: Request, exc: OrchestrationError) -> JSONResponse:
        status_code = error_status_code(exc)
        if status_code >= 500:
            logger.error("Request failed: %s", exc)
        return JSONResponse(status_code=status_code, content={"error": str(exc), "code": exc.code})

    return app


def error_status_code(error: OrchestrationError) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, SpawnFailedError):
        return 500
    if isinstance(error, (InvalidTransitionError, ProcessError)):
        return 409
    return 500
