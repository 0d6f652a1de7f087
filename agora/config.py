"""
agora.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for client-side tuning: change-feed channel name,
refresh debounce, toast lifetime.  Secrets (``DATABASE_URL``) stay in
``.env`` and are read by :mod:`agora.database.engine`.

Usage::

    from agora.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.community_name)    # "Agora Dev"
    print(cfg.refresh_debounce_seconds)  # 0.25
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AgoraConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # Change feed
    notify_channel: str = "agora_changes"
    refresh_debounce_seconds: float = 0.25  # Burst window for coalescing refetches

    # Toasts
    toast_duration_seconds: float = 5.0
    toast_capacity: int = 50

    # Logging
    log_level: str = "INFO"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> AgoraConfig:
    """Read *path* and return an :class:`AgoraConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If ``community_name`` is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = AgoraConfig(community_name="")
    return AgoraConfig(
        community_name=raw["community_name"],
        notify_channel=str(raw.get("notify_channel", defaults.notify_channel)),
        refresh_debounce_seconds=float(
            raw.get("refresh_debounce_seconds", defaults.refresh_debounce_seconds)
        ),
        toast_duration_seconds=float(
            raw.get("toast_duration_seconds", defaults.toast_duration_seconds)
        ),
        toast_capacity=int(raw.get("toast_capacity", defaults.toast_capacity)),
        log_level=str(raw.get("log_level", defaults.log_level)).upper(),
    )
