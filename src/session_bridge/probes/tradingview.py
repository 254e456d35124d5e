"""TradingView session probe.

Uses the user endpoint of TradingView's internal API, which answers with
the account as JSON for a logged-in ``sessionid`` cookie.
"""

from __future__ import annotations

from typing import Any

import httpx

from session_bridge.probes.base import PlatformProbe
from session_bridge.probes.registry import register_probe

TRADINGVIEW_USER_URL = "https://www.tradingview.com/api/v1/user/"


@register_probe("tradingview")
class TradingViewProbe(PlatformProbe):
    name = "tradingview"
    endpoint = TRADINGVIEW_USER_URL
    extra_headers = {"Accept": "application/json"}
    identity_fields = ("id", "username", "user")

    def is_authenticated(self, response: httpx.Response) -> bool:
        payload = _json_body(response)
        if not isinstance(payload, dict):
            return False
        return any(payload.get(field) for field in self.identity_fields)

    def is_login_page(self, response: httpx.Response) -> bool:
        # An anonymous JSON answer carries no user but is not a login form either
        if _json_body(response) is not None:
            return False
        return super().is_login_page(response)


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
