"""
Global path helpers for Relay.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional


CONFIG_ROOT_ENV_VAR = "RELAY_CONFIG_ROOT"


def get_config_root(override: Optional[str | Path] = None) -> Path:
    """
    Resolve the Relay configuration folder.

    Priority:
    1. Explicit override argument
    2. RELAY_CONFIG_ROOT environment variable
    3. <home>/.config/relay
    """
    candidate: str | Path | None = override
    if candidate is None:
        candidate = os.environ.get(CONFIG_ROOT_ENV_VAR)
    if candidate is None:
        candidate = Path.home() / ".config" / "relay"
    return Path(candidate).expanduser().resolve()


def get_heartbeats_path(config_root: Optional[str | Path] = None) -> Path:
    """Return the heartbeat definitions file path."""
    return get_config_root(config_root) / "heartbeats.yml"


def get_sessions_path(config_root: Optional[str | Path] = None) -> Path:
    """Return the persisted session store path."""
    return get_config_root(config_root) / "sessions.json"


def resolve_working_dir(path: Optional[str | Path]) -> Optional[Path]:
    """
    Expand a configured working directory, or return None when unset.
    """
    if path is None:
        return None
    text = str(path).strip()
    if not text:
        return None
    return Path(text).expanduser().resolve()
