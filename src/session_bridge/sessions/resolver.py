"""The read path: look up the current session for a user and platform."""

from __future__ import annotations

import structlog

from session_bridge.health.monitor import HealthMonitor
from session_bridge.models import HealthState, PlatformSessionData, SessionHealthStatus, SessionKey
from session_bridge.sessions.store import SessionStore

logger = structlog.get_logger()


class SessionResolver:
    """Return stored sessions regardless of health.

    Health is advisory: a degraded or failed session is still returned
    with a warning, and the caller decides whether to use it. ``None``
    means there is nothing stored and the user has to capture again.
    """

    def __init__(self, store: SessionStore, monitor: HealthMonitor) -> None:
        self.store = store
        self.monitor = monitor

    async def resolve(self, platform: str, identity: str) -> PlatformSessionData | None:
        record = await self.store.get(identity, platform)
        if record is None:
            logger.debug("session_not_found", identity=identity[:8], platform=platform)
            return None

        status = self.monitor.status(SessionKey(identity, platform))
        if status is not None and status.state in (HealthState.DEGRADED, HealthState.FAILED):
            logger.warning(
                "resolving_unhealthy_session",
                key=record.key.short,
                state=status.state.value,
                consecutive_failures=status.consecutive_failures,
            )
        return record

    async def resolve_with_health(
        self, platform: str, identity: str
    ) -> tuple[PlatformSessionData | None, SessionHealthStatus | None]:
        record = await self.resolve(platform, identity)
        return record, self.monitor.status(SessionKey(identity, platform))

    async def latest(self, platform: str) -> PlatformSessionData | None:
        """Most recently captured session for ``platform`` across all identities."""
        records = await self.store.list_records(platform)
        if not records:
            return None
        return max(records, key=lambda record: record.extracted_at)
