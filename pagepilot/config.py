"""Configuration helpers for the page agent."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .schemas import Viewport
from .settle import DEFAULT_QUIET_PERIOD_MS, DEFAULT_SETTLE_TIMEOUT_MS
from .storage import DEFAULT_DATA_DIR

logger = logging.getLogger(__name__)

DEFAULT_GOAL_TIMEOUT_S = 300.0
DEFAULT_MAX_ACTIONS = 100
DEFAULT_VIEWPORT = "1440x900"


@dataclass
class RunnerConfig:
    """
    Resolved configuration for one agent process.

    Loaded from ``PAGEPILOT_*`` environment variables at startup; see from_env()
    for the complete list.
    """

    data_dir: Path = DEFAULT_DATA_DIR
    goal_timeout_s: float = DEFAULT_GOAL_TIMEOUT_S
    max_actions: int = DEFAULT_MAX_ACTIONS
    settle_timeout_ms: int = DEFAULT_SETTLE_TIMEOUT_MS
    settle_quiet_ms: int = DEFAULT_QUIET_PERIOD_MS
    playbooks_enabled: bool = True
    headless: bool = True
    viewport: Viewport = field(default_factory=lambda: _parse_viewport(DEFAULT_VIEWPORT))

    @classmethod
    def from_env(cls) -> "RunnerConfig":
        """Construct a configuration object based on environment variables."""

        data_dir = Path(
            os.getenv("PAGEPILOT_DATA_DIR", str(DEFAULT_DATA_DIR))
        ).expanduser()
        return cls(
            data_dir=data_dir,
            goal_timeout_s=_env_float("PAGEPILOT_GOAL_TIMEOUT", DEFAULT_GOAL_TIMEOUT_S),
            max_actions=_env_int("PAGEPILOT_MAX_ACTIONS", DEFAULT_MAX_ACTIONS),
            settle_timeout_ms=_env_int("PAGEPILOT_SETTLE_TIMEOUT_MS", DEFAULT_SETTLE_TIMEOUT_MS),
            settle_quiet_ms=_env_int("PAGEPILOT_SETTLE_QUIET_MS", DEFAULT_QUIET_PERIOD_MS),
            playbooks_enabled=os.getenv("PAGEPILOT_PLAYBOOKS", "1") != "0",
            headless=os.getenv("PAGEPILOT_HEADLESS", "1") != "0",
            viewport=_parse_viewport(os.getenv("PAGEPILOT_VIEWPORT", DEFAULT_VIEWPORT)),
        )


def _env_int(name: str, default: int) -> int:
    raw: Optional[str] = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw: Optional[str] = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _parse_viewport(value: str) -> Viewport:
    """Parse ``WIDTHxHEIGHT``; fall back to the default size on anything else."""
    try:
        width, height = (int(part) for part in value.lower().split("x", 1))
        if width <= 0 or height <= 0:
            raise ValueError(value)
        return Viewport(width=width, height=height)
    except ValueError:
        logger.warning("Ignoring invalid viewport %r, using %s", value, DEFAULT_VIEWPORT)
        width, height = (int(part) for part in DEFAULT_VIEWPORT.split("x"))
        return Viewport(width=width, height=height)


__all__ = ["RunnerConfig"]
