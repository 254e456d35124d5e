"""Background health monitoring of stored sessions.

The monitor re-probes every registered (identity, platform) key and keeps
a failure counter per key, so that one network blip does not read as a
dead session. Only ``failure_threshold`` consecutive failures move a key
to ``failed``.

Each key carries its own next-due time: healthy keys wait
``interval_seconds``, failing keys come back sooner and then back off
exponentially up to ``max_interval_seconds``.
"""

from __future__ import annotations

import asyncio
import datetime
import itertools
import time
from collections import deque
from collections.abc import Awaitable, Callable

import structlog

from session_bridge.errors import SessionError, network_error, platform_name, session_expired, unknown_error
from session_bridge.models import (
    HealthState,
    MonitorConfig,
    MonitoringStats,
    ProbeResult,
    SessionHealthReport,
    SessionHealthStatus,
    SessionKey,
)

logger = structlog.get_logger()

HEALTH_CHECK_OPERATION = "health_check"
RECENT_ERROR_LIMIT = 20
MAX_BACKOFF_EXPONENT = 32

ProbeCheck = Callable[[SessionKey], Awaitable[ProbeResult]]
FailureListener = Callable[[SessionHealthStatus], Awaitable[None]]

# Worst state wins when several platforms are summarized
_STATE_RANK = {
    HealthState.HEALTHY: 0,
    HealthState.UNKNOWN: 1,
    HealthState.DEGRADED: 2,
    HealthState.FAILED: 3,
}


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _snapshot(status: SessionHealthStatus) -> SessionHealthStatus:
    return status.model_copy(update={"recent_errors": list(status.recent_errors)})


class HealthMonitor:
    """Re-probe registered sessions and track their health.

    ``check`` performs one probe for a key; the engine supplies it so the
    monitor knows nothing about stores or platforms. No method raises:
    probe failures only move internal state.
    """

    def __init__(self, check: ProbeCheck, config: MonitorConfig | None = None) -> None:
        self._check = check
        self.config = config or MonitorConfig()
        self._statuses: dict[SessionKey, SessionHealthStatus] = {}
        self._due: dict[SessionKey, float] = {}
        self._generations: dict[SessionKey, int] = {}
        self._generation_counter = itertools.count(1)
        self._in_flight: dict[SessionKey, asyncio.Task[None]] = {}
        self._detached: set[asyncio.Task[None]] = set()
        self._recent_errors: deque[SessionError] = deque(maxlen=RECENT_ERROR_LIMIT)
        self._listeners: list[FailureListener] = []
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def registered_keys(self) -> list[SessionKey]:
        return list(self._statuses)

    def add_failure_listener(self, listener: FailureListener) -> None:
        """Call ``listener`` once each time a key transitions into ``failed``."""
        self._listeners.append(listener)

    # --- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Begin the timer loop. Calling it while running does nothing."""
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._run(), name="session-health-monitor")
        logger.info(
            "health_monitor_started",
            interval=self.config.interval_seconds,
            degraded_interval=self.config.degraded_interval_seconds,
            threshold=self.config.failure_threshold,
            sessions=len(self._statuses),
        )

    async def stop(self) -> None:
        """Stop scheduling ticks and let in-flight probes finish."""
        loop_task, self._loop_task = self._loop_task, None
        if loop_task is not None and not loop_task.done():
            loop_task.cancel()
            try:
                await loop_task
            except asyncio.CancelledError:
                pass

        pending = [*self._in_flight.values(), *self._detached]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if loop_task is not None:
            logger.info("health_monitor_stopped", drained=len(pending))

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._seconds_until_due())
            self.tick()

    def _seconds_until_due(self) -> float:
        # Wake at least once per shortest interval so newly scheduled keys are not missed
        ceiling = min(self.config.interval_seconds, self.config.degraded_interval_seconds)
        waiting = [due for key, due in self._due.items() if key not in self._in_flight]
        if not waiting:
            return ceiling
        return min(max(min(waiting) - time.monotonic(), 0.0), ceiling)

    # --- registration ------------------------------------------------------

    def register(self, key: SessionKey) -> bool:
        """Start monitoring ``key``, due at once. Returns False if it was already registered."""
        if key in self._statuses:
            return False
        self._statuses[key] = SessionHealthStatus(identity=key.identity, platform=key.platform)
        self._generations[key] = next(self._generation_counter)
        self._due[key] = time.monotonic()
        logger.info("session_registered", key=key.short)
        return True

    def unregister(self, key: SessionKey) -> bool:
        """Stop monitoring ``key``. A probe still in flight is discarded when it lands."""
        if key not in self._statuses:
            return False
        self._forget(key)
        logger.info("session_unregistered", key=key.short)
        return True

    def clear(self) -> None:
        for key in list(self._statuses):
            self._forget(key)

    def _forget(self, key: SessionKey) -> None:
        del self._statuses[key]
        self._generations.pop(key, None)
        self._due.pop(key, None)
        task = self._in_flight.pop(key, None)
        if task is not None:
            # Still awaited by stop(), but no longer blocks a fresh registration
            self._detached.add(task)
            task.add_done_callback(self._detached.discard)

    # --- probing -----------------------------------------------------------

    def tick(self, now: float | None = None) -> list[asyncio.Task[None]]:
        """Launch one background probe per key that is due and not already in flight.

        ``now`` is a :func:`time.monotonic` reading; it defaults to the current one.
        """
        if now is None:
            now = time.monotonic()
        launched = []
        for key in list(self._statuses):
            if key in self._in_flight:
                logger.debug("probe_skipped_in_flight", key=key.short)
                continue
            if self._due.get(key, now) > now:
                continue
            generation = self._generations[key]
            task = asyncio.create_task(self._probe(key, generation), name=f"probe:{key.short}")
            self._in_flight[key] = task
            launched.append(task)
        return launched

    async def _probe(self, key: SessionKey, generation: int) -> None:
        try:
            result = await asyncio.wait_for(self._check(key), timeout=self.config.probe_timeout_seconds)
        except asyncio.TimeoutError:
            result = ProbeResult.failed(
                network_error(key.platform, HEALTH_CHECK_OPERATION, "probe timed out")
            )
        except Exception as e:
            logger.exception("probe_crashed", key=key.short)
            result = ProbeResult.failed(unknown_error(key.platform, HEALTH_CHECK_OPERATION, str(e) or type(e).__name__))
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]

        if self._generations.get(key) != generation:
            logger.debug("probe_result_discarded", key=key.short, reason="registration replaced")
            return
        await self.report(key, result)

    async def report(self, key: SessionKey, result: ProbeResult) -> SessionHealthStatus | None:
        """Apply one probe result to ``key`` and schedule its next probe.

        Unregistered keys are ignored.
        """
        status = self._statuses.get(key)
        if status is None:
            logger.debug("probe_result_discarded", key=key.short, reason="not registered")
            return None

        now = _now()
        status.total_checks += 1
        status.last_checked = now

        if result.live:
            previous = status.state
            status.consecutive_failures = 0
            status.state = HealthState.HEALTHY
            status.last_success = now
            self._schedule(key, status)
            if previous in (HealthState.DEGRADED, HealthState.FAILED):
                logger.info("session_recovered", key=key.short, previous=previous.value)
            return _snapshot(status)

        error = result.error or session_expired(key.platform, HEALTH_CHECK_OPERATION, result.reason)
        previous = status.state
        status.consecutive_failures += 1
        status.total_failures += 1
        status.last_error = error
        status.recent_errors = [*status.recent_errors, error][-RECENT_ERROR_LIMIT:]
        self._recent_errors.append(error)

        if status.consecutive_failures >= self.config.failure_threshold:
            status.state = HealthState.FAILED
        else:
            status.state = HealthState.DEGRADED
        self._schedule(key, status)

        logger.warning(
            "session_probe_failed",
            key=key.short,
            state=status.state.value,
            consecutive_failures=status.consecutive_failures,
            kind=error.kind.value,
            next_check_in=status.check_interval,
        )

        snapshot = _snapshot(status)
        if status.state is HealthState.FAILED and previous is not HealthState.FAILED:
            await self._notify_failed(snapshot)
        return snapshot

    def next_interval(self, consecutive_failures: int) -> float:
        """Seconds until the next probe of a key with this many consecutive failures."""
        if consecutive_failures <= 0:
            return self.config.interval_seconds
        exponent = min(consecutive_failures - 1, MAX_BACKOFF_EXPONENT)
        delay = self.config.degraded_interval_seconds * self.config.backoff_factor**exponent
        return min(delay, self.config.max_interval_seconds)

    def _schedule(self, key: SessionKey, status: SessionHealthStatus) -> None:
        interval = self.next_interval(status.consecutive_failures)
        status.check_interval = interval
        status.next_check = _now() + datetime.timedelta(seconds=interval)
        self._due[key] = time.monotonic() + interval

    async def _notify_failed(self, status: SessionHealthStatus) -> None:
        for listener in self._listeners:
            try:
                await listener(status)
            except Exception:
                logger.exception("failure_listener_error", platform=status.platform)

    # --- queries -----------------------------------------------------------

    def status(self, key: SessionKey) -> SessionHealthStatus | None:
        """Current health of ``key``, or None when it is not monitored."""
        status = self._statuses.get(key)
        return _snapshot(status) if status is not None else None

    def report_for(self, identity: str) -> SessionHealthReport | None:
        """Summarize every monitored platform of ``identity``; None when nothing is monitored."""
        platforms = {
            key.platform: _snapshot(status) for key, status in self._statuses.items() if key.identity == identity
        }
        if not platforms:
            return None

        critical_errors: list[SessionError] = []
        actions: list[str] = []
        auto_recovery = False
        for platform, status in sorted(platforms.items()):
            name = platform_name(platform)
            if status.state is HealthState.FAILED:
                if status.last_error is not None:
                    critical_errors.append(status.last_error)
                actions.append(f"Re-authenticate your {name} session")
            elif status.state is HealthState.DEGRADED:
                auto_recovery = True
                if status.consecutive_failures > 1:
                    actions.append(f"Check the {name} connection and credentials")

        return SessionHealthReport(
            identity=identity,
            platforms=platforms,
            overall=max((status.state for status in platforms.values()), key=_STATE_RANK.__getitem__),
            critical_errors=critical_errors,
            recommended_actions=actions,
            auto_recovery_available=auto_recovery,
            generated_at=_now(),
        )

    def stats(self) -> MonitoringStats:
        counts = {state: 0 for state in HealthState}
        for status in self._statuses.values():
            counts[status.state] += 1
        return MonitoringStats(
            running=self.running,
            total=len(self._statuses),
            unknown=counts[HealthState.UNKNOWN],
            healthy=counts[HealthState.HEALTHY],
            degraded=counts[HealthState.DEGRADED],
            failed=counts[HealthState.FAILED],
            in_flight=len(self._in_flight),
            recent_errors=list(self._recent_errors),
        )
