"""Structured session errors with ordered recovery steps.

Every fallible operation in the engine reports failures as a
:class:`SessionError`. The error carries enough structure (kind,
severity, recovery steps) for an API handler or UI to decide whether to
retry silently or to ask the user to capture a fresh cookie.
"""

from __future__ import annotations

import asyncio
import datetime
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel

PLATFORM_NAMES = {
    "marketinout": "MarketInOut",
    "tradingview": "TradingView",
}

REAUTH_INSTRUCTION = "Please re-authenticate via the browser extension to capture a fresh session."


class ErrorKind(str, Enum):
    SESSION_EXPIRED = "SESSION_EXPIRED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    NETWORK_ERROR = "NETWORK_ERROR"
    API_RATE_LIMITED = "API_RATE_LIMITED"
    OPERATION_FAILED = "OPERATION_FAILED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    WAIT_AND_RETRY = "wait_and_retry"
    REFRESH_SESSION = "refresh_session"
    RE_AUTHENTICATE = "re_authenticate"
    CLEAR_CACHE = "clear_cache"
    CHECK_NETWORK = "check_network"
    UPDATE_CREDENTIALS = "update_credentials"
    CONTACT_SUPPORT = "contact_support"


class RecoveryStep(BaseModel):
    """A single suggested way out of an error."""

    action: RecoveryAction
    description: str
    priority: int
    automated: bool = False
    estimated_time: str | None = None


HTTP_STATUS_BY_KIND = {
    ErrorKind.OPERATION_FAILED: 400,
    ErrorKind.SESSION_EXPIRED: 401,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.API_RATE_LIMITED: 429,
    ErrorKind.NETWORK_ERROR: 503,
    ErrorKind.UNKNOWN_ERROR: 500,
}


class SessionError(Exception):
    """Failure of a session operation, propagated unchanged to the boundary."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        platform: str,
        operation: str,
        user_message: str | None = None,
        severity: Severity = Severity.ERROR,
        recovery_steps: list[RecoveryStep] | None = None,
        http_status: int | None = None,
        url: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.platform = platform
        self.operation = operation
        self.user_message = user_message or message
        self.severity = severity
        self.recovery_steps = sorted(recovery_steps or [], key=lambda step: step.priority)
        self.http_status = http_status
        self.url = url
        self.details = details or {}
        self.timestamp = datetime.datetime.now(datetime.timezone.utc)

    def __repr__(self) -> str:
        return (
            f"SessionError(kind={self.kind.value}, platform={self.platform!r}, "
            f"operation={self.operation!r}, message={self.message!r})"
        )

    @property
    def code(self) -> str:
        return f"{self.platform.upper()}_{self.kind.value}"

    @property
    def needs_reauthentication(self) -> bool:
        """True when the only way forward is a fresh cookie capture."""
        return any(step.action is RecoveryAction.RE_AUTHENTICATE for step in self.recovery_steps)

    def recovery_instructions(self) -> list[str]:
        return [step.description for step in self.recovery_steps]

    def can_auto_recover(self) -> bool:
        return any(step.automated for step in self.recovery_steps)

    def automated_actions(self) -> list[RecoveryStep]:
        return [step for step in self.recovery_steps if step.automated]

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses and health snapshots."""
        return {
            "code": self.code,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "platform": self.platform,
            "operation": self.operation,
            "message": self.user_message,
            "technicalMessage": self.message,
            "timestamp": self.timestamp.isoformat(),
            "httpStatus": self.http_status,
            "url": self.url,
            "recoverySteps": [
                {
                    "action": step.action.value,
                    "description": step.description,
                    "priority": step.priority,
                    "automated": step.automated,
                    "estimatedTime": step.estimated_time,
                }
                for step in self.recovery_steps
            ],
        }


def http_status_for(error: SessionError) -> int:
    """HTTP status code an API handler should answer with for this error."""
    return HTTP_STATUS_BY_KIND.get(error.kind, 500)


def platform_name(platform: str) -> str:
    return PLATFORM_NAMES.get(platform, platform or "the platform")


def _reauthenticate_step(platform: str, priority: int = 1) -> RecoveryStep:
    return RecoveryStep(
        action=RecoveryAction.RE_AUTHENTICATE,
        description=f"Log in to {platform_name(platform)} again and re-capture the session with the browser extension",
        priority=priority,
        automated=False,
        estimated_time="2-3 minutes",
    )


def session_expired(platform: str, operation: str, reason: str | None = None) -> SessionError:
    name = platform_name(platform)
    return SessionError(
        ErrorKind.SESSION_EXPIRED,
        f"Session expired for platform {platform} during {operation}" + (f": {reason}" if reason else ""),
        platform=platform,
        operation=operation,
        user_message=f"Your {name} session has expired. {REAUTH_INSTRUCTION}",
        severity=Severity.WARNING,
        recovery_steps=[
            _reauthenticate_step(platform),
            RecoveryStep(
                action=RecoveryAction.CLEAR_CACHE,
                description="Clear your browser cache and cookies if the problem persists",
                priority=2,
                estimated_time="1 minute",
            ),
        ],
    )


def invalid_credentials(
    platform: str,
    operation: str,
    reason: str | None = None,
    *,
    http_status: int | None = None,
    url: str | None = None,
) -> SessionError:
    name = platform_name(platform)
    return SessionError(
        ErrorKind.INVALID_CREDENTIALS,
        f"Invalid session for platform {platform} during {operation}" + (f": {reason}" if reason else ""),
        platform=platform,
        operation=operation,
        user_message=f"The {name} session was rejected. {REAUTH_INSTRUCTION}",
        severity=Severity.ERROR,
        http_status=http_status,
        url=url,
        recovery_steps=[
            _reauthenticate_step(platform),
            RecoveryStep(
                action=RecoveryAction.UPDATE_CREDENTIALS,
                description="Verify you are logged in to the right account before capturing",
                priority=2,
                estimated_time="1 minute",
            ),
        ],
    )


def missing_credentials(platform: str, operation: str) -> SessionError:
    """The caller did not send the email/password pair that identifies the user."""
    return SessionError(
        ErrorKind.INVALID_CREDENTIALS,
        f"User credentials missing for {operation} on platform {platform}",
        platform=platform,
        operation=operation,
        user_message="User email and password are required. Please log in to the extension first.",
        severity=Severity.WARNING,
        recovery_steps=[
            RecoveryStep(
                action=RecoveryAction.UPDATE_CREDENTIALS,
                description="Enter your email and password in the extension settings",
                priority=1,
                estimated_time="1 minute",
            ),
        ],
    )


def network_error(
    platform: str,
    operation: str,
    reason: str,
    *,
    url: str | None = None,
) -> SessionError:
    return SessionError(
        ErrorKind.NETWORK_ERROR,
        f"Network error during {operation} for platform {platform}: {reason}",
        platform=platform,
        operation=operation,
        user_message=f"Could not reach {platform_name(platform)}. Please check the connection and try again.",
        severity=Severity.ERROR,
        url=url,
        recovery_steps=[
            RecoveryStep(
                action=RecoveryAction.CHECK_NETWORK,
                description="Check your internet connection",
                priority=1,
                estimated_time="1 minute",
            ),
            RecoveryStep(
                action=RecoveryAction.WAIT_AND_RETRY,
                description="Wait a moment and try again",
                priority=2,
                automated=True,
                estimated_time="30 seconds",
            ),
            RecoveryStep(
                action=RecoveryAction.RETRY,
                description="Retry the operation",
                priority=3,
                estimated_time="30 seconds",
            ),
        ],
    )


def rate_limited(
    platform: str,
    operation: str,
    retry_after: int | None = None,
    *,
    url: str | None = None,
) -> SessionError:
    wait = f"{retry_after} seconds" if retry_after else "1-2 minutes"
    return SessionError(
        ErrorKind.API_RATE_LIMITED,
        f"Rate limit exceeded for platform {platform} during {operation}",
        platform=platform,
        operation=operation,
        user_message=f"Too many requests to {platform_name(platform)}. Please wait {wait} before trying again.",
        severity=Severity.WARNING,
        http_status=429,
        url=url,
        details={"retry_after": retry_after},
        recovery_steps=[
            RecoveryStep(
                action=RecoveryAction.WAIT_AND_RETRY,
                description=f"Wait {wait} before trying again",
                priority=1,
                automated=True,
                estimated_time=wait,
            ),
        ],
    )


def operation_failed(
    platform: str,
    operation: str,
    reason: str,
    *,
    severity: Severity = Severity.ERROR,
) -> SessionError:
    return SessionError(
        ErrorKind.OPERATION_FAILED,
        f"{operation} failed for platform {platform}: {reason}",
        platform=platform,
        operation=operation,
        user_message=reason,
        severity=severity,
        recovery_steps=[
            _reauthenticate_step(platform, priority=1),
            RecoveryStep(
                action=RecoveryAction.CONTACT_SUPPORT,
                description="Contact support if the issue persists",
                priority=2,
                estimated_time="Variable",
            ),
        ],
    )


def unknown_error(
    platform: str,
    operation: str,
    reason: str,
    *,
    severity: Severity = Severity.ERROR,
) -> SessionError:
    return SessionError(
        ErrorKind.UNKNOWN_ERROR,
        f"Unexpected error during {operation} for platform {platform}: {reason}",
        platform=platform,
        operation=operation,
        user_message="An unexpected error occurred. Please try again.",
        severity=severity,
        recovery_steps=[
            RecoveryStep(
                action=RecoveryAction.RETRY,
                description="Retry the operation",
                priority=1,
                estimated_time="30 seconds",
            ),
            RecoveryStep(
                action=RecoveryAction.REFRESH_SESSION,
                description="Re-check the stored session",
                priority=2,
                automated=True,
                estimated_time="1 minute",
            ),
            RecoveryStep(
                action=RecoveryAction.CONTACT_SUPPORT,
                description="Contact support if the issue persists",
                priority=3,
                estimated_time="Variable",
            ),
        ],
    )


def from_exception(
    exc: BaseException,
    platform: str,
    operation: str,
    url: str | None = None,
    *,
    severity: Severity | None = None,
) -> SessionError:
    """Classify an arbitrary exception into a SessionError.

    ``severity`` overrides the classified severity, for callers that know
    the failure is worse than its type suggests.
    """
    if isinstance(exc, SessionError):
        return exc
    error = _classify(exc, platform, operation, url)
    if severity is not None:
        error.severity = severity
    return error


def _classify(exc: BaseException, platform: str, operation: str, url: str | None) -> SessionError:
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return network_error(platform, operation, "request timed out", url=url)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        request_url = str(exc.request.url)
        if status in (401, 403):
            return invalid_credentials(platform, operation, f"HTTP {status}", http_status=status, url=request_url)
        if status == 429:
            return rate_limited(platform, operation, url=request_url)
        error = unknown_error(platform, operation, f"HTTP {status}")
        error.http_status = status
        error.url = request_url
        return error
    if isinstance(exc, httpx.TransportError):
        return network_error(platform, operation, str(exc) or type(exc).__name__, url=url)
    return unknown_error(platform, operation, str(exc) or type(exc).__name__)
