"""Core data models for session-bridge."""

from __future__ import annotations

import datetime
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from session_bridge.cookies import (
    CookiePair,
    CookieString,
    normalize_cookies,
    primary_cookie,
    to_cookie_header,
)
from session_bridge.errors import SessionError

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
DEFAULT_STORE_PATH = Path.home() / ".config" / "session-bridge" / "sessions.json"
SESSION_COOKIE_NAME = "internalSessionToken"
SESSION_COOKIE_MAX_AGE = 7 * 24 * 60 * 60


# --- configuration ---------------------------------------------------------


class ServerConfig(BaseModel):
    """HTTP server and session-cookie settings."""

    host: str = "127.0.0.1"
    port: int = 8000
    secure_cookies: bool = True
    cookie_name: str = SESSION_COOKIE_NAME
    cookie_max_age: int = SESSION_COOKIE_MAX_AGE
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class MonitorConfig(BaseModel):
    """Background health monitor tuning.

    Healthy sessions are re-probed every ``interval_seconds``. After a
    failure the next probe comes after ``degraded_interval_seconds``,
    multiplied by ``backoff_factor`` for every further consecutive
    failure and capped at ``max_interval_seconds``.
    """

    interval_seconds: float = Field(default=30.0, gt=0)
    degraded_interval_seconds: float = Field(default=10.0, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    max_interval_seconds: float = Field(default=900.0, gt=0)
    failure_threshold: int = Field(default=3, ge=1)
    probe_timeout_seconds: float = Field(default=10.0, gt=0)


class StorageConfig(BaseModel):
    """Session store persistence. ``path: null`` keeps sessions in memory only."""

    path: Path | None = DEFAULT_STORE_PATH
    passphrase: str | None = None


class ProbeConfig(BaseModel):
    """Configuration for a single platform probe."""

    enabled: bool = True
    timeout: float = Field(default=10.0, gt=0)
    endpoint: str | None = None
    user_agent: str = DEFAULT_USER_AGENT


class NotificationConfig(BaseModel):
    slack_webhook_url: str | None = None


class AppConfig(BaseModel):
    """Top-level application configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    probes: dict[str, ProbeConfig] = Field(default_factory=dict)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    def probe_config(self, platform: str) -> ProbeConfig:
        return self.probes.get(platform) or ProbeConfig()


# --- sessions --------------------------------------------------------------


class UserCredentials(BaseModel):
    """Email and password a user typed into the extension."""

    email: str
    password: str = Field(repr=False)


class SessionKey(NamedTuple):
    """Monitoring and storage key: one entry per (identity, platform)."""

    identity: str
    platform: str

    def __str__(self) -> str:
        return f"{self.identity}:{self.platform}"

    @property
    def short(self) -> str:
        """Loggable form that does not spell out the whole identity."""
        return f"{self.identity[:8]}:{self.platform}"


class PlatformSessionData(BaseModel):
    """The current captured session for one (identity, platform) pair."""

    identity: str
    platform: str
    internal_session_id: str
    cookies: dict[str, str]
    extracted_at: datetime.datetime
    source_url: str | None = None
    source: str = "extension"
    user_email: str
    user_password: str = Field(repr=False)

    @field_validator("cookies", mode="before")
    @classmethod
    def _normalize_cookies(cls, value: Any) -> Any:
        if isinstance(value, (CookiePair, CookieString, Mapping)):
            return normalize_cookies(value)
        return value

    @property
    def key(self) -> SessionKey:
        return SessionKey(self.identity, self.platform)

    @property
    def primary_cookie(self) -> tuple[str, str] | None:
        return primary_cookie(self.cookies)

    @property
    def cookie_header(self) -> str:
        return to_cookie_header(self.cookies)

    def public_view(self) -> dict[str, Any]:
        """Describe the record without cookie values or credentials."""
        return {
            "identity": self.identity[:12],
            "platform": self.platform,
            "internalSessionId": self.internal_session_id[:8] + "...",
            "cookieNames": sorted(self.cookies),
            "extractedAt": self.extracted_at.isoformat(),
            "sourceUrl": self.source_url,
            "source": self.source,
        }


# --- probes ----------------------------------------------------------------


class ProbeVerdict(str, Enum):
    LIVE = "live"
    DEAD = "dead"
    INCONCLUSIVE = "inconclusive"
    ERROR = "error"


class ProbeResult(BaseModel):
    """Classification of a single liveness probe.

    ``INCONCLUSIVE`` counts as live: probes are heuristic, and a spurious
    re-authentication prompt costs more than one extra monitoring cycle.
    ``ERROR`` means the probe could not decide (network, rate limiting)
    and always carries a :class:`SessionError`.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    platform: str
    verdict: ProbeVerdict
    reason: str | None = None
    status_code: int | None = None
    error: SessionError | None = None

    @property
    def live(self) -> bool:
        return self.verdict in (ProbeVerdict.LIVE, ProbeVerdict.INCONCLUSIVE)

    @classmethod
    def alive(cls, platform: str, reason: str | None = None, *, status_code: int | None = None) -> ProbeResult:
        return cls(platform=platform, verdict=ProbeVerdict.LIVE, reason=reason, status_code=status_code)

    @classmethod
    def uncertain(cls, platform: str, reason: str, *, status_code: int | None = None) -> ProbeResult:
        return cls(platform=platform, verdict=ProbeVerdict.INCONCLUSIVE, reason=reason, status_code=status_code)

    @classmethod
    def dead(cls, platform: str, reason: str, *, status_code: int | None = None) -> ProbeResult:
        return cls(platform=platform, verdict=ProbeVerdict.DEAD, reason=reason, status_code=status_code)

    @classmethod
    def failed(cls, error: SessionError, *, status_code: int | None = None) -> ProbeResult:
        return cls(
            platform=error.platform,
            verdict=ProbeVerdict.ERROR,
            reason=error.message,
            status_code=status_code,
            error=error,
        )


# --- health ----------------------------------------------------------------


class HealthState(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


class SessionHealthStatus(BaseModel):
    """The monitor's current belief about one session's liveness."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    identity: str
    platform: str
    state: HealthState = HealthState.UNKNOWN
    consecutive_failures: int = 0
    total_checks: int = 0
    total_failures: int = 0
    last_checked: datetime.datetime | None = None
    last_success: datetime.datetime | None = None
    last_error: SessionError | None = None
    recent_errors: list[SessionError] = Field(default_factory=list)
    check_interval: float | None = None
    next_check: datetime.datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "state": self.state.value,
            "consecutiveFailures": self.consecutive_failures,
            "totalChecks": self.total_checks,
            "totalFailures": self.total_failures,
            "lastChecked": self.last_checked.isoformat() if self.last_checked else None,
            "lastSuccess": self.last_success.isoformat() if self.last_success else None,
            "lastError": self.last_error.to_dict() if self.last_error else None,
            "checkInterval": self.check_interval,
            "nextCheck": self.next_check.isoformat() if self.next_check else None,
        }


class SessionHealthReport(BaseModel):
    """Health of every monitored platform session belonging to one identity."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    identity: str
    platforms: dict[str, SessionHealthStatus]
    overall: HealthState
    critical_errors: list[SessionError] = Field(default_factory=list)
    recommended_actions: list[str] = Field(default_factory=list)
    auto_recovery_available: bool = False
    generated_at: datetime.datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "platforms": {name: status.to_dict() for name, status in self.platforms.items()},
            "overallState": self.overall.value,
            "criticalErrors": [error.to_dict() for error in self.critical_errors],
            "recommendedActions": list(self.recommended_actions),
            "autoRecoveryAvailable": self.auto_recovery_available,
            "generatedAt": self.generated_at.isoformat(),
        }


class MonitoringStats(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    running: bool
    total: int = 0
    unknown: int = 0
    healthy: int = 0
    degraded: int = 0
    failed: int = 0
    in_flight: int = 0
    recent_errors: list[SessionError] = Field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(exclude={"recent_errors"})
        data["recent_errors"] = [error.to_dict() for error in self.recent_errors]
        return data


class BridgeResult(BaseModel):
    """Outcome of a successful bridge call."""

    session_id: str
    platform: str
    identity: str
    record: PlatformSessionData
    probe: ProbeResult
