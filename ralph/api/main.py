"""
Ralph API entry point.

This module builds the FastAPI application: shared state created in the
lifespan, CORS, exception handlers rendering ``{error, message}`` bodies,
and the endpoint routers.
"""

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from http import HTTPStatus
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ralph.api.config import APIConfig
from ralph.api.run_manager import RunManager
from ralph.config import RalphConfig
from ralph.engine import AgentFactory
from ralph.errors import PlanError, RegistryError
from ralph.events import EventBus, StateWatcher, WatchTarget
from ralph.registry import PlanRegistry

logger = logging.getLogger(__name__)


def _error_body(status_code: int, message: str) -> dict[str, Any]:
    return {"error": HTTPStatus(status_code).phrase, "message": message}


def registry_watch_targets(
    registry: PlanRegistry, base: RalphConfig
) -> Callable[[], list[WatchTarget]]:
    """Watch targets for every registered plan file and its session directory."""

    def targets() -> list[WatchTarget]:
        found: list[WatchTarget] = []
        for plan in registry.list():
            config = base.with_overrides(project_root=plan.project_root)
            data = {"planId": plan.plan_id}
            found.append(WatchTarget(Path(plan.plan_path), "plan.changed", data))
            found.append(WatchTarget(config.resolved_state_dir, "session.changed", data))
        return found

    return targets


def create_application(
    config: APIConfig | None = None,
    registry: PlanRegistry | None = None,
    bus: EventBus | None = None,
    run_config: RalphConfig | None = None,
    agent_factory: AgentFactory | None = None,
    watch: bool = True,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Server settings (default: from the environment)
        registry: Plan registry (default: at ``config.registry_path``)
        bus: Event bus shared by runs and event streams
        run_config: Defaults applied to every run
        agent_factory: Agent used by runs (default: the claude CLI)
        watch: Poll plan and session files for changes

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    config = config or APIConfig()
    registry = registry or PlanRegistry(config.registry_path)
    bus = bus or EventBus()
    runs = RunManager(bus, run_config, agent_factory)
    logger.info(f"API configuration loaded: environment={config.environment}")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        watcher = None
        if watch:
            watcher = StateWatcher(
                bus,
                interval=config.poll_interval,
                targets_provider=registry_watch_targets(registry, runs.base_config),
            )
            watcher.start()
        logger.info(f"Ralph API ready ({len(registry.list())} registered plans)")
        try:
            yield
        finally:
            await runs.shutdown()
            if watcher is not None:
                await watcher.stop()
            bus.close()
            logger.info("Ralph API stopped")

    app = FastAPI(
        title=config.title,
        description="Run implementation plans with a coding agent and follow their progress.",
        version=config.version,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.registry = registry
    app.state.bus = bus
    app.state.runs = runs

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PlanError)
    async def plan_error_handler(request: Request, exc: PlanError) -> JSONResponse:
        """Handle invalid or missing plans with 400 response."""
        logger.warning(f"PlanError: {exc.message}")
        body = _error_body(400, exc.message)
        if exc.errors:
            body["errors"] = exc.errors
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(RegistryError)
    async def registry_error_handler(request: Request, exc: RegistryError) -> JSONResponse:
        """Handle unknown plan ids with 404 response."""
        logger.warning(f"RegistryError: {exc.message}")
        return JSONResponse(status_code=404, content=_error_body(404, exc.message))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.status_code, str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle malformed request bodies with 400 response."""
        problems = [
            f"{'.'.join(str(part) for part in error['loc'] if part != 'body')}: {error['msg']}"
            for error in exc.errors()
        ]
        return JSONResponse(status_code=400, content=_error_body(400, "; ".join(problems)))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle general exceptions with appropriate response."""
        logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
        body = _error_body(500, "An unexpected error occurred")
        if config.is_development:
            body["type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=body)

    from ralph.api.endpoints import api_router

    app.include_router(api_router)
    return app


def run_server(config: APIConfig | None = None, **kwargs) -> None:
    """Serve the API with uvicorn until interrupted."""
    config = config or APIConfig()
    app = create_application(config, **kwargs)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
