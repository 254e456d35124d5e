"""Shared test fixtures for session-bridge."""

from __future__ import annotations

import datetime
from collections.abc import Mapping

import pytest
import structlog

from session_bridge.engine import SessionEngine
from session_bridge.models import (
    AppConfig,
    PlatformSessionData,
    ProbeResult,
    StorageConfig,
    UserCredentials,
)
from session_bridge.sessions.store import SessionStore
from session_bridge.utils.identity import hash_identity


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Reset structlog configuration after each test.

    Prevents the CLI's setup_logging() from poisoning other tests
    with a logger bound to a closed stderr file descriptor.
    """
    yield
    structlog.reset_defaults()


class StubProbe:
    """Probe double that answers from a queue and records the cookies it saw.

    With an empty queue every probe comes back live.
    """

    def __init__(self, name: str = "marketinout", *results: ProbeResult) -> None:
        self.name = name
        self.url = f"https://{name}.example/probe"
        self.results = list(results)
        self.calls: list[dict[str, str]] = []
        self.closed = False

    def queue(self, *results: ProbeResult) -> None:
        self.results.extend(results)

    async def probe(self, cookies: Mapping[str, str]) -> ProbeResult:
        self.calls.append(dict(cookies))
        if self.results:
            return self.results.pop(0)
        return ProbeResult.alive(self.name, "stub")

    async def cleanup(self) -> None:
        self.closed = True


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(storage=StorageConfig(path=None))


@pytest.fixture
def credentials() -> UserCredentials:
    return UserCredentials(email="trader@example.com", password="correct horse")


@pytest.fixture
def identity(credentials: UserCredentials) -> str:
    return hash_identity(credentials.email, credentials.password)


@pytest.fixture
def mio_probe() -> StubProbe:
    return StubProbe("marketinout")


@pytest.fixture
def tv_probe() -> StubProbe:
    return StubProbe("tradingview")


@pytest.fixture
def engine(app_config: AppConfig, mio_probe: StubProbe, tv_probe: StubProbe) -> SessionEngine:
    return SessionEngine(
        app_config,
        SessionStore(),
        probes={"marketinout": mio_probe, "tradingview": tv_probe},
    )


def make_record(
    identity: str,
    platform: str = "marketinout",
    cookies: dict[str, str] | None = None,
    *,
    session_id: str = "internal-session-id-0000000001",
    extracted_at: datetime.datetime | None = None,
) -> PlatformSessionData:
    return PlatformSessionData(
        identity=identity,
        platform=platform,
        internal_session_id=session_id,
        cookies=cookies or {"ASPSESSIONIDQQ": "abc123"},
        extracted_at=extracted_at or datetime.datetime(2026, 3, 1, 9, 30, tzinfo=datetime.timezone.utc),
        source_url="https://www.marketinout.com/",
        user_email="trader@example.com",
        user_password="correct horse",
    )


@pytest.fixture
def record(identity: str) -> PlatformSessionData:
    return make_record(identity)


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def probe_factory():
    return StubProbe
