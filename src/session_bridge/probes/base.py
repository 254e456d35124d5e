"""Abstract base class for platform liveness probes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping

import httpx
import structlog

from session_bridge.cookies import to_cookie_header
from session_bridge.errors import network_error, rate_limited, unknown_error
from session_bridge.models import ProbeConfig, ProbeResult

logger = structlog.get_logger()

PROBE_OPERATION = "probe"


class PlatformProbe(ABC):
    """Base class for all platform probes.

    A probe issues exactly one read-only GET against a fixed endpoint with
    the candidate cookie and classifies the response. Redirects are never
    followed, so a bounce to the login page stays observable.

    ``probe()`` never raises: transport failures and rate limiting come
    back as ``ERROR`` results carrying a :class:`SessionError`.
    """

    name: str = "unnamed"
    endpoint: str = ""
    login_markers: tuple[str, ...] = ("login", "signin", "password", "sign in")
    extra_headers: dict[str, str] = {}

    def __init__(self, config: ProbeConfig, http: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self.url = config.endpoint or self.endpoint
        self.log = logger.bind(platform=self.name)
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=config.timeout, follow_redirects=False)

    async def cleanup(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def probe(self, cookies: Mapping[str, str]) -> ProbeResult:
        """Check whether ``cookies`` still authenticate against the platform."""
        header = to_cookie_header(cookies)
        if not header:
            return ProbeResult.dead(self.name, "no usable cookie to probe with")

        headers = {"Cookie": header, "User-Agent": self.config.user_agent, **self.extra_headers}
        try:
            response = await self._http.get(
                self.url,
                headers=headers,
                follow_redirects=False,
                timeout=self.config.timeout,
            )
        except httpx.TimeoutException:
            self.log.warning("probe_timeout", url=self.url, timeout=self.config.timeout)
            return ProbeResult.failed(network_error(self.name, PROBE_OPERATION, "request timed out", url=self.url))
        except httpx.HTTPError as e:
            self.log.warning("probe_transport_error", url=self.url, error=str(e) or type(e).__name__)
            return ProbeResult.failed(
                network_error(self.name, PROBE_OPERATION, str(e) or type(e).__name__, url=self.url)
            )
        except ValueError as e:
            # Raised while encoding headers or the URL, before anything is sent
            self.log.error("probe_request_invalid", url=self.url, error=str(e) or type(e).__name__)
            return ProbeResult.failed(
                unknown_error(self.name, PROBE_OPERATION, f"request could not be built: {type(e).__name__}")
            )

        result = self.classify(response)
        self.log.info(
            "probe_completed",
            verdict=result.verdict.value,
            status_code=result.status_code,
            reason=result.reason,
        )
        return result

    def classify(self, response: httpx.Response) -> ProbeResult:
        """Apply the shared classification rules, then the platform's own checks."""
        status = response.status_code

        if response.is_redirect:
            location = response.headers.get("location", "")
            if self._mentions_login(location):
                return ProbeResult.dead(self.name, f"redirected to login page ({location})", status_code=status)
            return ProbeResult.dead(self.name, f"unexpected redirect to {location or 'unknown location'}", status_code=status)

        if status == 429:
            error = rate_limited(self.name, PROBE_OPERATION, _retry_after(response), url=self.url)
            return ProbeResult.failed(error, status_code=status)

        if not response.is_success:
            return ProbeResult.dead(self.name, f"HTTP {status}", status_code=status)

        if self.is_authenticated(response):
            return ProbeResult.alive(self.name, "authenticated content found", status_code=status)

        if self.is_login_page(response):
            return ProbeResult.dead(self.name, "login form returned instead of content", status_code=status)

        self.log.warning("probe_uncertain", status_code=status, length=len(response.content))
        return ProbeResult.uncertain(self.name, "no authenticated or login markers found", status_code=status)

    @abstractmethod
    def is_authenticated(self, response: httpx.Response) -> bool:
        """Return True if the 2xx response could only be served to a logged-in user."""

    def is_login_page(self, response: httpx.Response) -> bool:
        """Return True if the 2xx response looks like a login form.

        Only consulted when :meth:`is_authenticated` found nothing.
        """
        return self._mentions_login(response.text)

    def _mentions_login(self, text: str) -> bool:
        lowered = text.lower()
        return any(marker.lower() in lowered for marker in self.login_markers)


def _retry_after(response: httpx.Response) -> int | None:
    value = response.headers.get("retry-after", "").strip()
    return int(value) if value.isdigit() else None
