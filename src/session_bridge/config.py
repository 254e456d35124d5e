"""YAML configuration loading with secret reference resolution."""

from __future__ import annotations

from pathlib import Path

import structlog
import yaml

from session_bridge.models import AppConfig
from session_bridge.utils.secrets import resolve_secrets

logger = structlog.get_logger()

DEFAULT_CONFIG_PATHS = [
    Path("config.yaml"),
    Path("config.yml"),
    Path.home() / ".config" / "session-bridge" / "config.yaml",
]


def find_config_file(config_path: Path | None = None) -> Path:
    """Find the configuration file.

    Args:
        config_path: Explicit path to config file. If None, searches default locations.

    Returns:
        Path to the configuration file.

    Raises:
        FileNotFoundError: If no configuration file is found.
    """
    if config_path is not None:
        if config_path.exists():
            return config_path
        raise FileNotFoundError(f"Config file not found: {config_path}")

    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            logger.info("config_found", path=str(path))
            return path

    search_paths = ", ".join(str(p) for p in DEFAULT_CONFIG_PATHS)
    raise FileNotFoundError(
        f"No config file found. Searched: {search_paths}. "
        f"Create one from config.example.yaml."
    )


def load_config(
    config_path: Path | None = None,
    resolve_secret_refs: bool = True,
    allow_defaults: bool = False,
) -> AppConfig:
    """Load and validate application configuration.

    Args:
        config_path: Explicit path to config file.
        resolve_secret_refs: Whether to resolve ``op://`` and ``env:`` references.
            Set to False to validate the file without touching secrets.
        allow_defaults: Return the built-in defaults when no config file is found
            in the default locations. An explicit ``config_path`` must always exist.

    Returns:
        Validated AppConfig instance.
    """
    try:
        path = find_config_file(config_path)
    except FileNotFoundError:
        if config_path is not None or not allow_defaults:
            raise
        logger.info("config_defaults", reason="no config file found")
        return AppConfig()

    logger.info("loading_config", path=str(path))

    raw = yaml.safe_load(path.read_text()) or {}

    if resolve_secret_refs:
        raw = resolve_secrets(raw)

    return AppConfig.model_validate(raw)
