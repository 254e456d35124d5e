"""Slack alerts for sessions that need re-authentication."""

from __future__ import annotations

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from session_bridge.errors import REAUTH_INSTRUCTION, platform_name
from session_bridge.models import SessionHealthStatus

logger = structlog.get_logger()


async def send_slack_notification(
    webhook_url: str,
    text: str,
    *,
    username: str = "session-bridge",
    attempts: int = 3,
) -> bool:
    """Send a notification to Slack via incoming webhook.

    Transport errors are retried; HTTP error responses are not.

    Returns:
        True if the message was sent successfully.
    """
    if not webhook_url:
        logger.debug("slack_notification_skipped", reason="no webhook URL")
        return False

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(min=1, max=10),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = await client.post(webhook_url, json={"text": text, "username": username})
                    response.raise_for_status()
        logger.info("slack_notification_sent")
        return True
    except httpx.HTTPError:
        logger.warning("slack_notification_failed", exc_info=True)
        return False


def format_failure_alert(status: SessionHealthStatus) -> str:
    """Format a Slack message for a session that just transitioned to failed."""
    lines = [
        f":rotating_light: *{platform_name(status.platform)} session failed*",
        f"Identity: `{status.identity[:12]}`",
        f"Consecutive failed probes: {status.consecutive_failures}",
    ]
    if status.last_error is not None:
        lines.append(f"Last error: {status.last_error.kind.value}: {status.last_error.message}")
    lines.append(REAUTH_INSTRUCTION)
    return "\n".join(lines)
