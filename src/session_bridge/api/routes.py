"""Routes used by the browser extension and the dashboard."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Request, Response

from session_bridge.api.deps import ConfigDep, EngineDep
from session_bridge.api.schemas import CredentialsBody, SessionSubmission
from session_bridge.errors import (
    REAUTH_INSTRUCTION,
    missing_credentials,
    operation_failed,
    session_expired,
)
from session_bridge.models import HealthState
from session_bridge.probes.registry import detect_platform
from session_bridge.sessions.bridge import BRIDGE_OPERATION, is_valid_session_id
from session_bridge.utils.identity import hash_identity

logger = structlog.get_logger()

extension_router = APIRouter(prefix="/extension", tags=["extension"])
health_router = APIRouter(prefix="/session-health", tags=["session-health"])

UNKNOWN_PLATFORM = "unknown"


@extension_router.post("/session")
async def submit_session(
    body: SessionSubmission,
    request: Request,
    response: Response,
    engine: EngineDep,
    config: ConfigDep,
) -> dict[str, Any]:
    """Bridge a cookie captured by the extension and set the internal session cookie."""
    platform = body.platform or detect_platform(body.source_url, body.cookie_name) or UNKNOWN_PLATFORM
    logger.info("session_submitted", platform=platform, provided=body.platform is not None)

    credentials = body.credentials()
    if credentials is None:
        raise missing_credentials(platform, BRIDGE_OPERATION)
    if not body.cookie_name or not body.cookie_value:
        raise operation_failed(platform, BRIDGE_OPERATION, "cookieName and cookieValue are required")

    result = await engine.bridge(
        platform,
        body.cookie_name,
        body.cookie_value,
        credentials,
        request.cookies.get(config.server.cookie_name),
        extracted_at=body.extracted_at,
        source_url=body.source_url,
    )

    response.set_cookie(
        config.server.cookie_name,
        result.session_id,
        max_age=config.server.cookie_max_age,
        path="/",
        secure=config.server.secure_cookies,
        httponly=True,
        samesite="lax",
    )
    return {
        "success": True,
        "message": "Session bridged successfully",
        "sessionId": result.session_id,
        "platform": result.platform,
        "extractedAt": result.record.extracted_at.isoformat(),
        "healthMonitoringActive": engine.monitor.running,
        "health": engine.status(result.platform, result.identity).state.value,
    }


@extension_router.get("/session")
async def session_endpoint_info(engine: EngineDep) -> dict[str, Any]:
    """Connectivity check for the extension."""
    return {
        "success": True,
        "message": "Extension session endpoint is reachable",
        "platforms": engine.platforms(),
        "healthMonitoringActive": engine.monitor.running,
    }


@extension_router.post("/logout")
async def logout(
    body: CredentialsBody,
    request: Request,
    response: Response,
    engine: EngineDep,
    config: ConfigDep,
) -> dict[str, Any]:
    """Delete stored sessions for the user; all platforms when none is given.

    Without credentials the internal session cookie decides what is removed:
    every record bridged under that session id.
    """
    credentials = body.credentials()
    if credentials is not None:
        identity = hash_identity(credentials.email, credentials.password)
        platforms = [body.platform] if body.platform else engine.platforms()
        removed = [platform for platform in platforms if await engine.logout(identity, platform)]
        logger.info("user_logged_out", identity=identity[:8], removed=removed)
    else:
        session_id = request.cookies.get(config.server.cookie_name)
        if not is_valid_session_id(session_id):
            raise missing_credentials(body.platform or UNKNOWN_PLATFORM, "logout")
        removed = await engine.logout_session(session_id)
        logger.info("internal_session_logged_out", removed=removed)

    response.delete_cookie(config.server.cookie_name, path="/")
    return {"success": True, "removed": removed}


@health_router.post("/status")
async def session_status(body: CredentialsBody, engine: EngineDep) -> dict[str, Any]:
    """Health of one user's session on one platform."""
    platform = body.platform or UNKNOWN_PLATFORM
    credentials = body.credentials()
    if credentials is None:
        raise missing_credentials(platform, "session_status")
    if not body.platform:
        raise operation_failed(platform, "session_status", "platform is required")

    identity = hash_identity(credentials.email, credentials.password)
    record, status = await engine.resolve_with_health(platform, identity)

    payload: dict[str, Any] = {
        "success": True,
        "platform": platform,
        "state": status.state.value,
        "hasSession": record is not None,
        "health": status.to_dict(),
        "requiresReauthentication": status.state is HealthState.FAILED,
    }
    if status.state is HealthState.FAILED:
        guidance = session_expired(platform, "session_status", "health checks failed")
        payload["message"] = REAUTH_INSTRUCTION
        payload["recoverySteps"] = guidance.to_dict()["recoverySteps"]
    return payload


@health_router.get("/stats")
async def monitoring_stats(engine: EngineDep) -> dict[str, Any]:
    return {"success": True, "stats": engine.monitor.stats().to_dict()}


@health_router.post("/report")
async def session_report(body: CredentialsBody, engine: EngineDep) -> dict[str, Any]:
    """Health of all of a user's platform sessions, summarized to the worst state."""
    credentials = body.credentials()
    if credentials is None:
        raise missing_credentials(body.platform or UNKNOWN_PLATFORM, "session_report")

    report = engine.health_report(hash_identity(credentials.email, credentials.password))
    if report is None:
        return {"success": True, "hasSessions": False, "report": None, "requiresReauthentication": False}

    payload: dict[str, Any] = {
        "success": True,
        "hasSessions": True,
        "report": report.to_dict(),
        "requiresReauthentication": report.overall is HealthState.FAILED,
    }
    if report.overall is HealthState.FAILED:
        payload["message"] = REAUTH_INSTRUCTION
    return payload
