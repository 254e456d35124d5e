"""FastAPI dependency injection: app.state holds the engine; Depends() resolves it."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from session_bridge.engine import SessionEngine
from session_bridge.models import AppConfig


def get_engine(request: Request) -> SessionEngine:
    """Resolve the SessionEngine created by the app factory or lifespan."""
    return request.app.state.engine


def get_config(request: Request) -> AppConfig:
    return request.app.state.config


EngineDep = Annotated[SessionEngine, Depends(get_engine)]
ConfigDep = Annotated[AppConfig, Depends(get_config)]
