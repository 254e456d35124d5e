"""Tests for the background health monitor."""

from __future__ import annotations

import asyncio
import time

import pytest

from session_bridge.errors import ErrorKind, network_error
from session_bridge.health.monitor import RECENT_ERROR_LIMIT, HealthMonitor
from session_bridge.models import HealthState, MonitorConfig, ProbeResult, SessionKey

KEY = SessionKey("a" * 64, "marketinout")
OTHER_KEY = SessionKey("b" * 64, "tradingview")


def live() -> ProbeResult:
    return ProbeResult.alive("marketinout", "watchlist found")


def dead() -> ProbeResult:
    return ProbeResult.dead("marketinout", "login form returned")


class ScriptedCheck:
    """Probe function answering from a script; live once the script runs out."""

    def __init__(self, *results: ProbeResult) -> None:
        self.results = list(results)
        self.calls: list[SessionKey] = []

    async def __call__(self, key: SessionKey) -> ProbeResult:
        self.calls.append(key)
        if self.results:
            return self.results.pop(0)
        return live()


class BlockingCheck:
    """Probe function that waits until released."""

    def __init__(self, result: ProbeResult | None = None) -> None:
        self.release = asyncio.Event()
        self.result = result or live()
        self.calls = 0

    async def __call__(self, key: SessionKey) -> ProbeResult:
        self.calls += 1
        await self.release.wait()
        return self.result


# Later than any schedule the monitor can produce
EVERYTHING_DUE = float("inf")


async def run_tick(monitor: HealthMonitor) -> None:
    await asyncio.gather(*monitor.tick(now=EVERYTHING_DUE))


class TestTransitions:
    @pytest.mark.asyncio
    async def test_fail_fail_fail_then_success(self):
        monitor = HealthMonitor(ScriptedCheck(dead(), dead(), dead(), live()), MonitorConfig(failure_threshold=3))
        monitor.register(KEY)
        states = [monitor.status(KEY).state]

        for _ in range(3):
            await run_tick(monitor)
            states.append(monitor.status(KEY).state)

        assert states == [HealthState.UNKNOWN, HealthState.DEGRADED, HealthState.DEGRADED, HealthState.FAILED]
        assert monitor.status(KEY).consecutive_failures == 3

        await run_tick(monitor)
        status = monitor.status(KEY)
        assert status.state is HealthState.HEALTHY
        assert status.consecutive_failures == 0
        assert status.total_checks == 4
        assert status.total_failures == 3
        assert status.last_success is not None

    @pytest.mark.asyncio
    async def test_failed_session_keeps_being_probed(self):
        check = ScriptedCheck(dead(), dead(), dead())
        monitor = HealthMonitor(check, MonitorConfig(failure_threshold=1))
        monitor.register(KEY)

        await run_tick(monitor)
        assert monitor.status(KEY).state is HealthState.FAILED
        await run_tick(monitor)
        assert len(check.calls) == 2

    @pytest.mark.asyncio
    async def test_success_from_unknown_is_healthy(self):
        monitor = HealthMonitor(ScriptedCheck(), MonitorConfig())
        monitor.register(KEY)
        await run_tick(monitor)

        status = monitor.status(KEY)
        assert status.state is HealthState.HEALTHY
        assert status.last_checked is not None

    @pytest.mark.asyncio
    async def test_inconclusive_counts_as_success(self):
        monitor = HealthMonitor(ScriptedCheck(ProbeResult.uncertain("marketinout", "no markers")))
        monitor.register(KEY)
        await run_tick(monitor)
        assert monitor.status(KEY).state is HealthState.HEALTHY

    @pytest.mark.asyncio
    async def test_dead_result_records_session_expired(self):
        monitor = HealthMonitor(ScriptedCheck(dead()))
        monitor.register(KEY)
        await run_tick(monitor)

        status = monitor.status(KEY)
        assert status.last_error.kind is ErrorKind.SESSION_EXPIRED
        assert status.last_error.needs_reauthentication is True

    @pytest.mark.asyncio
    async def test_error_result_keeps_its_error(self):
        error = network_error("marketinout", "probe", "connection reset")
        monitor = HealthMonitor(ScriptedCheck(ProbeResult.failed(error)))
        monitor.register(KEY)
        await run_tick(monitor)

        assert monitor.status(KEY).last_error is error
        assert monitor.status(KEY).state is HealthState.DEGRADED

    @pytest.mark.asyncio
    async def test_report_applies_external_result(self):
        monitor = HealthMonitor(ScriptedCheck())
        monitor.register(KEY)

        snapshot = await monitor.report(KEY, live())

        assert snapshot.state is HealthState.HEALTHY
        assert monitor.status(KEY).state is HealthState.HEALTHY

    @pytest.mark.asyncio
    async def test_report_for_unregistered_key_is_ignored(self):
        monitor = HealthMonitor(ScriptedCheck())
        assert await monitor.report(KEY, dead()) is None
        assert monitor.status(KEY) is None


class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_twice_is_one_entry(self):
        check = ScriptedCheck(dead())
        monitor = HealthMonitor(check)

        assert monitor.register(KEY) is True
        assert monitor.register(KEY) is False
        assert monitor.registered_keys() == [KEY]

        await run_tick(monitor)
        assert len(check.calls) == 1
        assert monitor.status(KEY).consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_register_does_not_reset_existing_state(self):
        monitor = HealthMonitor(ScriptedCheck(dead()))
        monitor.register(KEY)
        await run_tick(monitor)

        monitor.register(KEY)
        assert monitor.status(KEY).state is HealthState.DEGRADED

    @pytest.mark.asyncio
    async def test_unregister(self):
        monitor = HealthMonitor(ScriptedCheck())
        monitor.register(KEY)
        assert monitor.unregister(KEY) is True
        assert monitor.unregister(KEY) is False
        assert monitor.status(KEY) is None
        assert monitor.tick() == []

    @pytest.mark.asyncio
    async def test_result_landing_after_unregister_is_discarded(self):
        check = BlockingCheck(dead())
        monitor = HealthMonitor(check)
        monitor.register(KEY)

        tasks = monitor.tick()
        await asyncio.sleep(0)
        monitor.unregister(KEY)
        check.release.set()
        await asyncio.gather(*tasks)

        assert monitor.status(KEY) is None
        assert monitor.stats().recent_errors == []


class TestProbing:
    @pytest.mark.asyncio
    async def test_in_flight_key_is_skipped(self):
        check = BlockingCheck()
        monitor = HealthMonitor(check)
        monitor.register(KEY)

        first = monitor.tick()
        second = monitor.tick()
        assert len(first) == 1
        assert second == []
        assert monitor.stats().in_flight == 1

        check.release.set()
        await asyncio.gather(*first)
        assert check.calls == 1
        assert monitor.status(KEY).total_checks == 1
        assert monitor.stats().in_flight == 0

    @pytest.mark.asyncio
    async def test_keys_are_probed_independently(self):
        check = ScriptedCheck()
        monitor = HealthMonitor(check)
        monitor.register(KEY)
        monitor.register(OTHER_KEY)

        await run_tick(monitor)
        assert sorted(check.calls) == sorted([KEY, OTHER_KEY])

    @pytest.mark.asyncio
    async def test_timeout_counts_as_network_failure(self):
        async def slow(key: SessionKey) -> ProbeResult:
            await asyncio.sleep(5)
            return live()

        monitor = HealthMonitor(slow, MonitorConfig(probe_timeout_seconds=0.01))
        monitor.register(KEY)
        await run_tick(monitor)

        status = monitor.status(KEY)
        assert status.state is HealthState.DEGRADED
        assert status.last_error.kind is ErrorKind.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_crashing_check_does_not_raise(self):
        async def broken(key: SessionKey) -> ProbeResult:
            raise RuntimeError("store exploded")

        monitor = HealthMonitor(broken)
        monitor.register(KEY)
        await run_tick(monitor)

        status = monitor.status(KEY)
        assert status.state is HealthState.DEGRADED
        assert status.last_error.kind is ErrorKind.UNKNOWN_ERROR


class TestFailureListeners:
    @pytest.mark.asyncio
    async def test_called_once_on_transition_to_failed(self):
        monitor = HealthMonitor(ScriptedCheck(dead(), dead(), dead(), dead()), MonitorConfig(failure_threshold=2))
        seen = []

        async def listener(status):
            seen.append(status.state)

        monitor.add_failure_listener(listener)
        monitor.register(KEY)
        for _ in range(4):
            await run_tick(monitor)

        assert seen == [HealthState.FAILED]

    @pytest.mark.asyncio
    async def test_listener_error_is_contained(self):
        monitor = HealthMonitor(ScriptedCheck(dead()), MonitorConfig(failure_threshold=1))

        async def listener(status):
            raise RuntimeError("slack down")

        monitor.add_failure_listener(listener)
        monitor.register(KEY)
        await run_tick(monitor)
        assert monitor.status(KEY).state is HealthState.FAILED


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self):
        monitor = HealthMonitor(ScriptedCheck(), MonitorConfig(interval_seconds=60))
        monitor.start()
        loop_task = monitor._loop_task
        monitor.start()
        assert monitor._loop_task is loop_task
        assert monitor.running is True

        await monitor.stop()
        await monitor.stop()
        assert monitor.running is False

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        monitor = HealthMonitor(ScriptedCheck())
        await monitor.stop()
        assert monitor.running is False

    @pytest.mark.asyncio
    async def test_timer_loop_ticks(self):
        check = ScriptedCheck()
        monitor = HealthMonitor(check, MonitorConfig(interval_seconds=0.01))
        monitor.register(KEY)

        monitor.start()
        await asyncio.sleep(0.1)
        await monitor.stop()

        assert len(check.calls) >= 1
        assert monitor.status(KEY).state is HealthState.HEALTHY

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_probe_finish(self):
        check = BlockingCheck()
        monitor = HealthMonitor(check, MonitorConfig(interval_seconds=60))
        monitor.register(KEY)
        monitor.start()
        monitor.tick()

        stopping = asyncio.create_task(monitor.stop())
        await asyncio.sleep(0.01)
        assert not stopping.done()

        check.release.set()
        await stopping
        assert monitor.status(KEY).state is HealthState.HEALTHY
        assert monitor.running is False


class TestQueries:
    @pytest.mark.asyncio
    async def test_status_is_a_snapshot(self):
        monitor = HealthMonitor(ScriptedCheck(dead()))
        monitor.register(KEY)
        await run_tick(monitor)

        snapshot = monitor.status(KEY)
        snapshot.consecutive_failures = 99
        snapshot.recent_errors.clear()

        assert monitor.status(KEY).consecutive_failures == 1
        assert len(monitor.status(KEY).recent_errors) == 1

    @pytest.mark.asyncio
    async def test_stats(self):
        monitor = HealthMonitor(ScriptedCheck(dead()), MonitorConfig(failure_threshold=1))
        monitor.register(KEY)
        monitor.register(OTHER_KEY)
        await run_tick(monitor)

        stats = monitor.stats()
        assert stats.total == 2
        assert stats.failed + stats.healthy == 2
        assert stats.failed == 1
        assert stats.running is False
        assert len(stats.recent_errors) == 1
        assert stats.to_dict()["recent_errors"][0]["kind"] == "SESSION_EXPIRED"

    @pytest.mark.asyncio
    async def test_recent_errors_are_bounded(self):
        results = [dead() for _ in range(RECENT_ERROR_LIMIT + 5)]
        monitor = HealthMonitor(ScriptedCheck(*results), MonitorConfig(failure_threshold=100))
        monitor.register(KEY)
        for _ in range(RECENT_ERROR_LIMIT + 5):
            await run_tick(monitor)

        assert len(monitor.status(KEY).recent_errors) == RECENT_ERROR_LIMIT
        assert len(monitor.stats().recent_errors) == RECENT_ERROR_LIMIT


class TestScheduling:
    @pytest.mark.asyncio
    async def test_new_key_is_due_at_once(self):
        check = ScriptedCheck()
        monitor = HealthMonitor(check)
        monitor.register(KEY)

        await asyncio.gather(*monitor.tick())
        assert check.calls == [KEY]

    @pytest.mark.asyncio
    async def test_healthy_key_waits_full_interval(self):
        check = ScriptedCheck()
        monitor = HealthMonitor(check, MonitorConfig(interval_seconds=30))
        monitor.register(KEY)
        await monitor.report(KEY, live())

        assert monitor.tick() == []
        assert monitor.tick(now=time.monotonic() + 29) == []
        await asyncio.gather(*monitor.tick(now=time.monotonic() + 31))
        assert check.calls == [KEY]
        assert monitor.status(KEY).check_interval == 30

    @pytest.mark.asyncio
    async def test_degraded_key_is_checked_sooner(self):
        check = ScriptedCheck()
        monitor = HealthMonitor(check, MonitorConfig(interval_seconds=30, degraded_interval_seconds=5))
        monitor.register(KEY)
        await monitor.report(KEY, dead())

        await asyncio.gather(*monitor.tick(now=time.monotonic() + 6))
        assert check.calls == [KEY]

    @pytest.mark.asyncio
    async def test_backoff_doubles_and_is_capped(self):
        config = MonitorConfig(degraded_interval_seconds=10, backoff_factor=2, max_interval_seconds=60, failure_threshold=10)
        monitor = HealthMonitor(ScriptedCheck(), config)
        monitor.register(KEY)

        intervals = []
        for _ in range(5):
            intervals.append((await monitor.report(KEY, dead())).check_interval)

        assert intervals == [10, 20, 40, 60, 60]
        assert monitor.status(KEY).next_check is not None

    def test_backoff_survives_long_failure_streaks(self):
        monitor = HealthMonitor(ScriptedCheck(), MonitorConfig(max_interval_seconds=900))
        assert monitor.next_interval(10_000) == 900

    @pytest.mark.asyncio
    async def test_success_resets_to_healthy_interval(self):
        monitor = HealthMonitor(ScriptedCheck(), MonitorConfig(interval_seconds=30, degraded_interval_seconds=5))
        monitor.register(KEY)
        await monitor.report(KEY, dead())
        status = await monitor.report(KEY, live())
        assert status.check_interval == 30


class TestReRegistration:
    @pytest.mark.asyncio
    async def test_stale_result_does_not_touch_new_registration(self):
        check = BlockingCheck(dead())
        monitor = HealthMonitor(check)
        monitor.register(KEY)

        stale = monitor.tick()
        await asyncio.sleep(0)
        monitor.unregister(KEY)
        monitor.register(KEY)
        await monitor.report(KEY, live())

        check.release.set()
        await asyncio.gather(*stale)

        status = monitor.status(KEY)
        assert status.state is HealthState.HEALTHY
        assert status.total_checks == 1
        assert status.total_failures == 0

    @pytest.mark.asyncio
    async def test_new_registration_is_not_blocked_by_old_check(self):
        check = BlockingCheck()
        monitor = HealthMonitor(check)
        monitor.register(KEY)

        stale = monitor.tick()
        await asyncio.sleep(0)
        monitor.unregister(KEY)
        monitor.register(KEY)

        fresh = monitor.tick()
        assert len(fresh) == 1

        check.release.set()
        await asyncio.gather(*stale, *fresh)
        assert monitor.status(KEY).total_checks == 1

    @pytest.mark.asyncio
    async def test_stop_drains_detached_checks(self):
        check = BlockingCheck()
        monitor = HealthMonitor(check)
        monitor.register(KEY)
        stale = monitor.tick()
        await asyncio.sleep(0)
        monitor.clear()

        stopping = asyncio.create_task(monitor.stop())
        await asyncio.sleep(0.01)
        assert not stopping.done()

        check.release.set()
        await stopping
        assert all(task.done() for task in stale)


class TestIdentityReport:
    @pytest.mark.asyncio
    async def test_none_when_nothing_monitored(self):
        assert HealthMonitor(ScriptedCheck()).report_for("a" * 64) is None

    @pytest.mark.asyncio
    async def test_worst_state_wins(self):
        monitor = HealthMonitor(ScriptedCheck(), MonitorConfig(failure_threshold=2))
        mio = SessionKey("c" * 64, "marketinout")
        tv = SessionKey("c" * 64, "tradingview")
        monitor.register(mio)
        monitor.register(tv)
        monitor.register(OTHER_KEY)
        await monitor.report(mio, live())
        for _ in range(2):
            await monitor.report(tv, ProbeResult.dead("tradingview", "HTTP 401"))

        report = monitor.report_for("c" * 64)

        assert set(report.platforms) == {"marketinout", "tradingview"}
        assert report.overall is HealthState.FAILED
        assert [error.platform for error in report.critical_errors] == ["tradingview"]
        assert report.recommended_actions == ["Re-authenticate your TradingView session"]
        assert report.auto_recovery_available is False
        data = report.to_dict()
        assert data["overallState"] == "failed"
        assert data["platforms"]["tradingview"]["state"] == "failed"

    @pytest.mark.asyncio
    async def test_degraded_offers_auto_recovery(self):
        monitor = HealthMonitor(ScriptedCheck(), MonitorConfig(failure_threshold=5))
        monitor.register(KEY)
        for _ in range(2):
            await monitor.report(KEY, dead())

        report = monitor.report_for(KEY.identity)

        assert report.overall is HealthState.DEGRADED
        assert report.critical_errors == []
        assert report.auto_recovery_available is True
        assert report.recommended_actions == ["Check the MarketInOut connection and credentials"]

    @pytest.mark.asyncio
    async def test_unknown_outranks_healthy(self):
        monitor = HealthMonitor(ScriptedCheck())
        other_platform = SessionKey(KEY.identity, "tradingview")
        monitor.register(KEY)
        monitor.register(other_platform)
        await monitor.report(KEY, live())

        assert monitor.report_for(KEY.identity).overall is HealthState.UNKNOWN
