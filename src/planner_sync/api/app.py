"""Planner API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that builds the :class:`PlannerService` from config and
  runs the background sync scheduler
- Health endpoint at GET /api/health
- OAuth and planner routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from planner_sync.api.middleware import register_error_handlers
from planner_sync.api.routers.oauth import router as oauth_router
from planner_sync.api.routers.planner import router as planner_router
from planner_sync.config import PlannerConfig
from planner_sync.service import PlannerService

logger = logging.getLogger(__name__)


def create_app(
    config: PlannerConfig | None = None,
    *,
    service: PlannerService | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Planner configuration.  Defaults to ``PlannerConfig()``.
    service:
        A pre-built service (tests).  When omitted, the lifespan handler
        builds one from *config* and closes it on shutdown.
    start_scheduler:
        Run the background sync loop for the lifetime of the app.
    """
    if config is None:
        config = service.config if service is not None else PlannerConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.planner is None
        if owned:
            app.state.planner = await PlannerService.create(config)
        planner: PlannerService = app.state.planner
        if start_scheduler:
            planner.scheduler.start()
            if planner.settings.current.connected_providers():
                planner.scheduler.request_sync()

        yield

        await planner.scheduler.stop()
        if owned:
            await planner.close()
            app.state.planner = None

    app = FastAPI(
        title="Planner Sync API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.planner = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(oauth_router)
    app.include_router(planner_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
