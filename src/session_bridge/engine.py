"""Composition root tying store, probes, monitor, bridge and resolver together."""

from __future__ import annotations

import datetime

import httpx
import structlog

from session_bridge.errors import session_expired
from session_bridge.health.monitor import HEALTH_CHECK_OPERATION, HealthMonitor
from session_bridge.models import (
    AppConfig,
    BridgeResult,
    HealthState,
    PlatformSessionData,
    ProbeResult,
    SessionHealthReport,
    SessionHealthStatus,
    SessionKey,
    UserCredentials,
)
from session_bridge.probes.base import PlatformProbe
from session_bridge.probes.registry import discover_probes, get_probe, list_probes
from session_bridge.sessions.bridge import SessionBridge
from session_bridge.sessions.resolver import SessionResolver
from session_bridge.sessions.store import SessionStore

logger = structlog.get_logger()


def _unmonitored(platform: str, identity: str) -> SessionHealthStatus:
    return SessionHealthStatus(identity=identity, platform=platform, state=HealthState.UNKNOWN)


class SessionEngine:
    """The one object the HTTP layer and CLI talk to.

    Owns exactly one :class:`HealthMonitor` and one probe instance per
    platform. Probe instances are created lazily and share ``http`` when
    one is given.
    """

    def __init__(
        self,
        config: AppConfig,
        store: SessionStore,
        *,
        http: httpx.AsyncClient | None = None,
        probes: dict[str, PlatformProbe] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self._http = http
        self._probes: dict[str, PlatformProbe] = dict(probes or {})
        self.monitor = HealthMonitor(self._check, config.monitor)
        self.bridge_service = SessionBridge(store, self.monitor, self.probe_for)
        self.resolver = SessionResolver(store, self.monitor)

    @classmethod
    def from_config(cls, config: AppConfig) -> SessionEngine:
        store = SessionStore(config.storage.path, config.storage.passphrase)
        return cls(config, store)

    # --- probes ------------------------------------------------------------

    def platforms(self) -> list[str]:
        """Enabled platforms, built-in and injected."""
        discover_probes()
        names = set(list_probes()) | set(self._probes)
        return sorted(name for name in names if self.config.probe_config(name).enabled)

    def probe_for(self, platform: str) -> PlatformProbe:
        """Return the probe for ``platform``.

        Raises:
            KeyError: If the platform is unknown or disabled in config.
        """
        if platform in self._probes:
            return self._probes[platform]

        probe_config = self.config.probe_config(platform)
        if not probe_config.enabled:
            raise KeyError(f"Platform '{platform}' is disabled")

        discover_probes()
        probe = get_probe(platform, probe_config, self._http)
        self._probes[platform] = probe
        return probe

    async def _check(self, key: SessionKey) -> ProbeResult:
        record = await self.store.get(key.identity, key.platform)
        if record is None:
            return ProbeResult.failed(session_expired(key.platform, HEALTH_CHECK_OPERATION, "no stored session"))
        return await self.probe_for(key.platform).probe(record.cookies)

    # --- write path --------------------------------------------------------

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
        return await self.bridge_service.bridge(
            platform,
            cookie_name,
            cookie_value,
            credentials,
            existing_session_id,
            extracted_at=extracted_at,
            source_url=source_url,
        )

    async def logout(self, identity: str, platform: str) -> bool:
        """Delete the stored session and stop monitoring it."""
        self.monitor.unregister(SessionKey(identity, platform))
        return await self.store.delete(identity, platform)

    async def logout_session(self, internal_session_id: str) -> list[str]:
        """Delete every record bridged under ``internal_session_id``. Returns the platforms removed."""
        removed = await self.store.delete_session(internal_session_id)
        for record in removed:
            self.monitor.unregister(record.key)
        return sorted(record.platform for record in removed)

    async def clear(self) -> int:
        self.monitor.clear()
        return await self.store.clear()

    # --- read path ---------------------------------------------------------

    async def resolve(self, platform: str, identity: str) -> PlatformSessionData | None:
        return await self.resolver.resolve(platform, identity)

    async def resolve_with_health(
        self, platform: str, identity: str
    ) -> tuple[PlatformSessionData | None, SessionHealthStatus]:
        record, status = await self.resolver.resolve_with_health(platform, identity)
        if status is None:
            status = _unmonitored(platform, identity)
        return record, status

    async def latest(self, platform: str) -> PlatformSessionData | None:
        return await self.resolver.latest(platform)

    def status(self, platform: str, identity: str) -> SessionHealthStatus:
        """Current health; ``unknown`` when the pair is not monitored."""
        status = self.monitor.status(SessionKey(identity, platform))
        if status is None:
            return _unmonitored(platform, identity)
        return status

    def health_report(self, identity: str) -> SessionHealthReport | None:
        """Summary across all of ``identity``'s monitored platforms, or None."""
        return self.monitor.report_for(identity)

    # --- lifecycle ---------------------------------------------------------

    async def restore_monitoring(self) -> int:
        """Register every stored record with the monitor. Returns how many were new."""
        restored = 0
        for record in await self.store.list_records():
            if self.monitor.register(record.key):
                restored += 1
        logger.info("monitoring_restored", sessions=restored)
        return restored

    def start(self) -> None:
        self.monitor.start()

    async def close(self) -> None:
        await self.monitor.stop()
        # Probes only close clients they created; a shared ``http`` stays with its owner
        for probe in self._probes.values():
            await probe.cleanup()
