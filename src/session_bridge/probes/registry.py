"""Probe discovery and registration."""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import urlparse

import httpx
import structlog

from session_bridge.cookies import is_asp_session_cookie

if TYPE_CHECKING:
    from session_bridge.models import ProbeConfig
    from session_bridge.probes.base import PlatformProbe

logger = structlog.get_logger()

# Global registry: platform tag -> probe class
_registry: dict[str, type[PlatformProbe]] = {}

_PLATFORM_HOSTS = {
    "marketinout.com": "marketinout",
    "tradingview.com": "tradingview",
}


def register_probe(name: str):
    """Decorator to register a probe class under a platform tag.

    Usage:
        @register_probe("marketinout")
        class MarketInOutProbe(PlatformProbe):
            ...
    """

    def decorator(cls: type[PlatformProbe]) -> type[PlatformProbe]:
        cls.name = name
        _registry[name] = cls
        logger.debug("probe_registered", name=name, cls=cls.__name__)
        return cls

    return decorator


def get_probe(name: str, config: ProbeConfig, http: httpx.AsyncClient | None = None) -> PlatformProbe:
    """Instantiate a registered probe by platform tag.

    Raises:
        KeyError: If no probe is registered for that platform.
    """
    if name not in _registry:
        available = ", ".join(sorted(_registry)) or "(none)"
        raise KeyError(f"Unknown platform '{name}'. Available: {available}")

    return _registry[name](config, http)


def list_probes() -> dict[str, type[PlatformProbe]]:
    """Return all registered probes."""
    return dict(_registry)


def discover_probes() -> None:
    """Import all built-in probe modules to trigger registration."""
    import session_bridge.probes.marketinout  # noqa: F401
    import session_bridge.probes.tradingview  # noqa: F401

    logger.debug("probes_discovered", count=len(_registry), names=sorted(_registry))


def detect_platform(url: str | None = None, cookie_name: str | None = None) -> str | None:
    """Guess the platform of a submission that did not name one.

    The source URL's host wins; the cookie name's shape is the fallback.
    """
    if url:
        host = (urlparse(url).hostname or "").lower()
        for domain, platform in _PLATFORM_HOSTS.items():
            if host == domain or host.endswith("." + domain):
                return platform

    if cookie_name:
        if is_asp_session_cookie(cookie_name) or cookie_name.upper().startswith("ASPSESSION"):
            return "marketinout"
        if cookie_name in ("sessionid", "sessionid_sign"):
            return "tradingview"

    return None
