"""Funnel configuration loader.

Loads funnel-specific JSON configuration files from disk.
Each funnel has a directory under funnels/<funnel_id>/config.json holding
brand, plan catalogue, router add-on, session lifetime and copy.
"""

from __future__ import annotations

import json
import os
from pathlib import Path


class FunnelConfigError(Exception):
    """Raised when a funnel configuration cannot be loaded or is invalid."""


_REQUIRED_SECTIONS = ("brand", "plans", "router", "session", "messaging")

DEFAULT_FUNNEL_ID = "spryfi"

# Default base path: <project_root>/funnels/
_DEFAULT_BASE_PATH = str(
    Path(__file__).resolve().parent.parent / "funnels"
)


def load_funnel_config(
    funnel_id: str = DEFAULT_FUNNEL_ID,
    base_path: str | None = None,
) -> dict:
    """Load a funnel configuration from a JSON file.

    Args:
        funnel_id: Directory name under the funnels folder (e.g. "spryfi").
        base_path: Root directory containing funnel folders.
                   Defaults to <project_root>/funnels/.

    Returns:
        Parsed funnel configuration dict.

    Raises:
        FunnelConfigError: If the config file is missing, invalid, or
                           lacks required sections.
    """
    if base_path is None:
        base_path = os.environ.get("FUNNEL_CONFIG_PATH", _DEFAULT_BASE_PATH)

    config_path = os.path.join(base_path, funnel_id, "config.json")

    if not os.path.isfile(config_path):
        raise FunnelConfigError(
            f"Funnel configuration not found: {config_path}"
        )

    try:
        with open(config_path, "r") as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise FunnelConfigError(
            f"Funnel configuration has invalid JSON: {config_path}: {e}"
        ) from e

    for section in _REQUIRED_SECTIONS:
        if section not in config:
            raise FunnelConfigError(
                f"Funnel configuration missing required section '{section}': "
                f"{config_path}"
            )

    if not config["plans"]:
        raise FunnelConfigError(f"Funnel configuration has no plans: {config_path}")
    for plan_id, plan in config["plans"].items():
        if "price" not in plan:
            raise FunnelConfigError(
                f"Plan '{plan_id}' has no price: {config_path}"
            )

    config.setdefault("funnel_id", funnel_id)
    return config


def env(name: str, default: str | None = None) -> str | None:
    """Read a setting from the environment, treating empty strings as unset."""
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value
