"""FastAPI application factory and router wiring for the marketplace backend."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import APIRouter, FastAPI, status
from fastapi.middleware.cors import CORSMiddleware

from marketplace.api.notifications import router as notifications_router
from marketplace.api.proposals import router as proposals_router
from marketplace.api.tasks import router as tasks_router
from marketplace.core.config import settings
from marketplace.core.error_handling import REQUEST_ID_HEADER, install_error_handling
from marketplace.core.logging import configure_logging, get_logger
from marketplace.db.session import build_engine, build_session_maker, init_db
from marketplace.schemas.health import HealthStatusResponse
from marketplace.services.notifications import NotificationDispatcher
from marketplace.services.rate_limit import build_rate_limiter, default_policies

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncEngine

    from marketplace.services.rate_limit import RateLimiter

configure_logging()
logger = get_logger(__name__)
OPENAPI_TAGS = [
    {
        "name": "health",
        "description": "Service liveness/readiness probes used by infrastructure checks.",
    },
    {
        "name": "tasks",
        "description": (
            "Task feed, owner edits, lifecycle transitions, proposals on a task, "
            "status history, and task chat."
        ),
    },
    {
        "name": "proposals",
        "description": "Executor-side proposal listing, edits, and withdrawal.",
    },
    {
        "name": "notifications",
        "description": "In-app notification inbox for the authenticated user.",
    },
]
_HEALTH_RESPONSES = {
    status.HTTP_200_OK: {
        "description": "Service is alive.",
        "content": {"application/json": {"example": {"ok": True}}},
    },
}


def _install_health_routes(app: FastAPI) -> None:
    @app.get(
        "/health",
        tags=["health"],
        response_model=HealthStatusResponse,
        summary="Health Check",
        responses=_HEALTH_RESPONSES,
    )
    def health() -> HealthStatusResponse:
        """Lightweight liveness probe endpoint."""
        return HealthStatusResponse(ok=True)

    @app.get(
        "/healthz",
        tags=["health"],
        response_model=HealthStatusResponse,
        summary="Health Alias Check",
        responses=_HEALTH_RESPONSES,
    )
    def healthz() -> HealthStatusResponse:
        """Alias liveness probe endpoint for platform compatibility."""
        return HealthStatusResponse(ok=True)

    @app.get(
        "/readyz",
        tags=["health"],
        response_model=HealthStatusResponse,
        summary="Readiness Check",
        responses=_HEALTH_RESPONSES,
    )
    def readyz() -> HealthStatusResponse:
        """Readiness probe endpoint for service orchestration checks."""
        return HealthStatusResponse(ok=True)


def create_app(
    *,
    engine: AsyncEngine | None = None,
    rate_limiter: RateLimiter | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> FastAPI:
    """Build the API with its engine, limiter, and dispatcher on ``app.state``.

    Passing ``engine`` skips migrations and the engine is left for the caller
    to dispose.
    """
    owns_engine = engine is None
    app_engine = build_engine() if engine is None else engine
    session_maker = build_session_maker(app_engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "app.lifecycle.starting",
            extra={
                "environment": settings.environment,
                "db_auto_migrate": settings.db_auto_migrate,
            },
        )
        await init_db(app_engine, auto_migrate=None if owns_engine else False)
        app.state.dispatcher.start()
        logger.info("app.lifecycle.started")
        try:
            yield
        finally:
            await app.state.dispatcher.stop(drain=True)
            if owns_engine:
                await app_engine.dispose()
            logger.info("app.lifecycle.stopped")

    app = FastAPI(
        title="Task Marketplace API",
        version="0.1.0",
        lifespan=lifespan,
        openapi_tags=OPENAPI_TAGS,
    )
    app.state.engine = app_engine
    app.state.session_maker = session_maker
    app.state.rate_limiter = rate_limiter or build_rate_limiter(settings)
    app.state.rate_limit_policies = default_policies(settings)
    app.state.dispatcher = dispatcher or NotificationDispatcher.from_settings(
        settings,
        session_maker,
    )

    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=[REQUEST_ID_HEADER, "Retry-After"],
        )
        logger.info("app.cors.enabled", extra={"origins_count": len(origins)})
    else:
        logger.info("app.cors.disabled")

    install_error_handling(app)
    _install_health_routes(app)

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(tasks_router)
    api_v1.include_router(proposals_router)
    api_v1.include_router(notifications_router)
    app.include_router(api_v1)

    logger.debug("app.routes.registered", extra={"count": len(app.routes)})
    return app


app = create_app()
