"""The write path: turn a captured cookie into a stored, monitored session."""

from __future__ import annotations

import datetime
import re
import secrets
from collections.abc import Callable

import structlog

from session_bridge.cookies import CookiePair, format_problem, sanitize
from session_bridge.errors import (
    Severity,
    SessionError,
    from_exception,
    invalid_credentials,
    operation_failed,
)
from session_bridge.health.monitor import HealthMonitor
from session_bridge.models import BridgeResult, PlatformSessionData, ProbeVerdict, UserCredentials
from session_bridge.probes.base import PlatformProbe
from session_bridge.sessions.store import SessionStore
from session_bridge.utils.identity import hash_identity

logger = structlog.get_logger()

BRIDGE_OPERATION = "bridge_session"
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{20,128}$")

ProbeLookup = Callable[[str], PlatformProbe]


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def is_valid_session_id(value: str | None) -> bool:
    return bool(value) and bool(SESSION_ID_PATTERN.match(value))


class SessionBridge:
    """Validate, probe, store and register one cookie submission.

    Each step is a gate: the first failure raises its :class:`SessionError`
    and nothing after it runs, so a rejected cookie never reaches the store
    or the monitor.
    """

    def __init__(self, store: SessionStore, monitor: HealthMonitor, probe_for: ProbeLookup) -> None:
        self.store = store
        self.monitor = monitor
        self._probe_for = probe_for

    async def bridge(
        self,
        platform: str,
        cookie_name: str,
        cookie_value: str,
        credentials: UserCredentials,
        existing_session_id: str | None = None,
        *,
        extracted_at: datetime.datetime | None = None,
        source_url: str | None = None,
    ) -> BridgeResult:
        log = logger.bind(platform=platform, cookie=cookie_name)

        problem = format_problem(cookie_name, cookie_value)
        if problem is not None:
            log.warning("cookie_rejected", reason=problem)
            raise operation_failed(platform, BRIDGE_OPERATION, f"Invalid cookie format: {problem}")

        value = sanitize(cookie_value)
        if value != cookie_value:
            log.warning("cookie_sanitized")

        try:
            probe = self._probe_for(platform)
        except KeyError:
            raise operation_failed(platform, BRIDGE_OPERATION, f"Unsupported platform: {platform}") from None

        result = await probe.probe({cookie_name: value})
        if result.verdict is ProbeVerdict.ERROR:
            log.warning("bridge_probe_error", kind=result.error.kind.value)
            raise result.error
        if result.verdict is ProbeVerdict.DEAD:
            log.warning("bridge_probe_dead", reason=result.reason)
            raise invalid_credentials(
                platform,
                BRIDGE_OPERATION,
                result.reason,
                http_status=result.status_code,
                url=probe.url,
            )

        identity = hash_identity(credentials.email, credentials.password)
        if is_valid_session_id(existing_session_id):
            session_id = existing_session_id
        else:
            session_id = new_session_id()

        record = PlatformSessionData(
            identity=identity,
            platform=platform,
            internal_session_id=session_id,
            cookies=CookiePair(cookie_name, value),
            extracted_at=extracted_at or datetime.datetime.now(datetime.timezone.utc),
            source_url=source_url,
            user_email=credentials.email,
            user_password=credentials.password,
        )

        try:
            await self.store.save(record)
        except SessionError:
            raise
        except Exception as e:
            log.exception("session_store_failed")
            raise from_exception(e, platform, BRIDGE_OPERATION, severity=Severity.CRITICAL) from e

        self.monitor.register(record.key)
        await self.monitor.report(record.key, result)

        log.info(
            "session_bridged",
            key=record.key.short,
            verdict=result.verdict.value,
            reused_session_id=session_id == existing_session_id,
        )
        return BridgeResult(
            session_id=session_id,
            platform=platform,
            identity=identity,
            record=record,
            probe=result,
        )
