"""Cookie validation and sanitization.

This module is the only place untrusted extension input is cleaned
before it reaches storage or an outgoing ``Cookie`` header. Everything
here is pure: no I/O, no logging, no exceptions for bad input.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

MAX_NAME_LENGTH = 256
MAX_VALUE_LENGTH = 4096

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
ASP_SESSION_PATTERN = re.compile(r"^ASPSESSIONID[A-Z0-9]+$", re.IGNORECASE)

# Anything outside the RFC 6265 cookie-octet set: controls, whitespace, DQUOTE,
# comma, semicolon, backslash and every non-ASCII character
_ILLEGAL_VALUE_CHARS = re.compile(r"[^\x21\x23-\x2b\x2d-\x3a\x3c-\x5b\x5d-\x7e]")
# Everything sanitize() removes: the above plus HTML/JS injection characters
_STRIPPED_CHARS = re.compile(r"[^\x21\x23-\x26\x28-\x2b\x2d-\x3a\x3d\x3f-\x5b\x5d-\x7e]")

SUSPICIOUS_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"<script",
        r"javascript:",
        r"vbscript:",
        r"onload=",
        r"onerror=",
        r"eval\(",
        r"document\.",
        r"window\.",
    )
]


@dataclass(frozen=True)
class CookiePair:
    """A single structured cookie as the extension reports it."""

    name: str
    value: str


@dataclass(frozen=True)
class CookieString:
    """Raw ``Cookie`` header text, e.g. ``"a=1; b=2"``."""

    header: str


CookieInput = CookiePair | CookieString | Mapping[str, str]


def format_problem(name: str, value: str) -> str | None:
    """Explain why a cookie pair is malformed, or return None if it is acceptable."""
    if not isinstance(name, str) or not name:
        return "cookie name is empty"
    if len(name) > MAX_NAME_LENGTH:
        return f"cookie name exceeds {MAX_NAME_LENGTH} characters"
    if not NAME_PATTERN.match(name):
        return "cookie name contains invalid characters"
    if not isinstance(value, str) or not value:
        return "cookie value is empty"
    if len(value) > MAX_VALUE_LENGTH:
        return f"cookie value exceeds {MAX_VALUE_LENGTH} characters"
    if _ILLEGAL_VALUE_CHARS.search(value):
        return "cookie value contains characters not allowed in a cookie"
    for pattern in SUSPICIOUS_PATTERNS:
        if pattern.search(value):
            return "cookie value contains a suspicious pattern"
    return None


def validate_format(name: str, value: str) -> bool:
    """Return True if ``name=value`` is safe to store and send."""
    return format_problem(name, value) is None


def sanitize(value: str) -> str:
    """Strip characters that must never reach a header. Idempotent, never raises."""
    if not isinstance(value, str):
        return ""
    return _STRIPPED_CHARS.sub("", value)[:MAX_VALUE_LENGTH]


def is_asp_session_cookie(name: str) -> bool:
    return bool(ASP_SESSION_PATTERN.match(name or ""))


def parse_cookie_header(header: str) -> dict[str, str]:
    """Parse ``"a=1; b=2"`` into a mapping, dropping malformed pairs."""
    cookies: dict[str, str] = {}
    if not isinstance(header, str):
        return cookies

    for part in header.split(";"):
        name, sep, value = part.strip().partition("=")
        name, value = name.strip(), value.strip()
        if sep and validate_format(name, value):
            cookies[name] = value
    return cookies


def to_cookie_header(cookies: Mapping[str, str]) -> str:
    return "; ".join(f"{name}={value}" for name, value in cookies.items() if validate_format(name, value))


def primary_cookie(cookies: Mapping[str, str]) -> tuple[str, str] | None:
    """Pick the cookie that identifies the session: ASPSESSION first, else the first one."""
    for name, value in cookies.items():
        if is_asp_session_cookie(name) and value:
            return name, value
    for name, value in cookies.items():
        if value:
            return name, value
    return None


def normalize_cookies(cookie: CookieInput) -> dict[str, str]:
    """Turn any accepted cookie shape into one sanitized ``{name: value}`` mapping.

    Invalid pairs are dropped, so the result may be empty.
    """
    if isinstance(cookie, CookieString):
        pairs = parse_cookie_header(cookie.header).items()
    elif isinstance(cookie, CookiePair):
        pairs = [(cookie.name, cookie.value)]
    elif isinstance(cookie, Mapping):
        pairs = cookie.items()
    else:
        raise TypeError(f"Unsupported cookie input: {type(cookie).__name__}")

    normalized: dict[str, str] = {}
    for name, value in pairs:
        cleaned = sanitize(value)
        if validate_format(name, cleaned):
            normalized[name] = cleaned
    return normalized
