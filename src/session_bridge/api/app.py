"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from session_bridge import __version__
from session_bridge.api.routes import extension_router, health_router
from session_bridge.engine import SessionEngine
from session_bridge.errors import SessionError, http_status_for
from session_bridge.models import AppConfig, SessionHealthStatus
from session_bridge.utils.notifications import format_failure_alert, send_slack_notification

logger = structlog.get_logger()


def create_app(config: AppConfig | None = None, engine: SessionEngine | None = None) -> FastAPI:
    """Build the API around an engine.

    When ``engine`` is None one is created from ``config`` at startup. In
    both cases the lifespan restores monitoring for stored sessions, starts
    the monitor, and closes the engine on shutdown.
    """
    config = config or AppConfig()

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        session_engine = engine or SessionEngine.from_config(config)
        fastapi_app.state.engine = session_engine

        webhook_url = config.notifications.slack_webhook_url
        if webhook_url:

            async def alert(status: SessionHealthStatus) -> None:
                await send_slack_notification(webhook_url, format_failure_alert(status))

            session_engine.monitor.add_failure_listener(alert)

        await session_engine.restore_monitoring()
        session_engine.start()
        logger.info("server_started", platforms=session_engine.platforms())

        yield

        await session_engine.close()
        logger.info("server_stopped")

    app = FastAPI(
        title="Session Bridge",
        description="Session lifecycle and health monitoring for captured platform cookies",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    if engine is not None:
        app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(SessionError)
    async def session_error_handler(request: Request, exc: SessionError) -> JSONResponse:
        status_code = http_status_for(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log("request_failed", path=request.url.path, code=exc.code, status=status_code)
        return JSONResponse(status_code=status_code, content={"success": False, "error": exc.to_dict()})

    app.include_router(extension_router)
    app.include_router(health_router)

    @app.get("/")
    def health():
        """Return health check status."""
        return {"status": "ok"}

    return app
