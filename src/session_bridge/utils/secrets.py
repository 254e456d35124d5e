"""Secret references in configuration values.

Two reference forms are understood:

- ``op://vault/item/field``: read through the 1Password CLI (``op read``)
- ``env:NAME``: read from the process environment
"""

from __future__ import annotations

import os
import subprocess
from typing import Any

import structlog

logger = structlog.get_logger()

OP_PREFIX = "op://"
ENV_PREFIX = "env:"


def is_secret_reference(value: Any) -> bool:
    """Check if a value is a secret reference of either form."""
    return isinstance(value, str) and (value.startswith(OP_PREFIX) or value.startswith(ENV_PREFIX))


def _read_onepassword(reference: str) -> str:
    try:
        result = subprocess.run(
            ["op", "read", reference],
            capture_output=True,
            text=True,
            check=True,
            timeout=10,
        )
    except FileNotFoundError:
        raise RuntimeError(
            "1Password CLI (`op`) is not installed or not in PATH. "
            "Install it from https://1password.com/downloads/command-line/"
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to resolve secret {reference}: {e.stderr.strip()}")
    except subprocess.TimeoutExpired:
        raise RuntimeError(f"Timed out resolving secret {reference}. Is 1Password unlocked?")
    return result.stdout.strip()


def _read_environment(reference: str) -> str:
    name = reference[len(ENV_PREFIX):]
    try:
        return os.environ[name]
    except KeyError:
        raise RuntimeError(f"Environment variable {name} referenced by config is not set") from None


def resolve_secret(reference: str) -> str:
    """Resolve a single secret reference; plain strings pass through.

    Raises:
        RuntimeError: If the reference cannot be resolved.
    """
    if not is_secret_reference(reference):
        return reference
    if reference.startswith(OP_PREFIX):
        return _read_onepassword(reference)
    return _read_environment(reference)


def resolve_secrets(data: Any) -> Any:
    """Recursively resolve secret references inside dicts and lists."""
    if isinstance(data, dict):
        return {key: _resolve_value(key, value) for key, value in data.items()}
    if isinstance(data, list):
        return [_resolve_value("item", item) for item in data]
    return data


def _resolve_value(key: str, value: Any) -> Any:
    if is_secret_reference(value):
        logger.debug("resolving_secret", key=key, kind=value.split(":", 1)[0])
        return resolve_secret(value)
    return resolve_secrets(value)
