"""MarketInOut session probe.

MarketInOut runs on classic ASP, so the session lives in an
``ASPSESSIONID*`` cookie. The watchlist page is only rendered for a
logged-in user; anonymous requests get the sign-in form or a redirect.
"""

from __future__ import annotations

import httpx

from session_bridge.probes.base import PlatformProbe
from session_bridge.probes.registry import register_probe

MARKETINOUT_WATCHLIST_URL = "https://www.marketinout.com/wl/watch_list.php?mode=list"


@register_probe("marketinout")
class MarketInOutProbe(PlatformProbe):
    """Probe the watchlist page and look for the watchlist selector."""

    name = "marketinout"
    endpoint = MARKETINOUT_WATCHLIST_URL
    authenticated_markers: tuple[str, ...] = ("sel_wlid", "watch_list", "watchlist")

    def is_authenticated(self, response: httpx.Response) -> bool:
        text = response.text.lower()
        return any(marker in text for marker in self.authenticated_markers)
