from pathlib import Path

import pytest

from pagepilot.config import RunnerConfig
from pagepilot.storage import DEFAULT_DATA_DIR

_VARS = (
    "PAGEPILOT_DATA_DIR",
    "PAGEPILOT_GOAL_TIMEOUT",
    "PAGEPILOT_MAX_ACTIONS",
    "PAGEPILOT_SETTLE_TIMEOUT_MS",
    "PAGEPILOT_SETTLE_QUIET_MS",
    "PAGEPILOT_PLAYBOOKS",
    "PAGEPILOT_HEADLESS",
    "PAGEPILOT_VIEWPORT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = RunnerConfig.from_env()
    assert config.data_dir == DEFAULT_DATA_DIR
    assert config.goal_timeout_s == 300.0
    assert config.max_actions == 100
    assert config.settle_timeout_ms == 2000
    assert config.settle_quiet_ms == 100
    assert config.playbooks_enabled is True
    assert config.headless is True
    assert (config.viewport.width, config.viewport.height) == (1440, 900)


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("PAGEPILOT_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("PAGEPILOT_GOAL_TIMEOUT", "12.5")
    monkeypatch.setenv("PAGEPILOT_MAX_ACTIONS", "7")
    monkeypatch.setenv("PAGEPILOT_SETTLE_TIMEOUT_MS", "800")
    monkeypatch.setenv("PAGEPILOT_PLAYBOOKS", "0")
    monkeypatch.setenv("PAGEPILOT_HEADLESS", "0")
    monkeypatch.setenv("PAGEPILOT_VIEWPORT", "1280X800")
    config = RunnerConfig.from_env()
    assert config.data_dir == Path(tmp_path)
    assert config.goal_timeout_s == 12.5
    assert config.max_actions == 7
    assert config.settle_timeout_ms == 800
    assert config.playbooks_enabled is False
    assert config.headless is False
    assert (config.viewport.width, config.viewport.height) == (1280, 800)


@pytest.mark.parametrize("viewport", ["wide", "1440", "0x900", "-1x-1"])
def test_invalid_viewport_falls_back(monkeypatch, viewport):
    monkeypatch.setenv("PAGEPILOT_VIEWPORT", viewport)
    config = RunnerConfig.from_env()
    assert (config.viewport.width, config.viewport.height) == (1440, 900)


def test_invalid_numbers_fall_back(monkeypatch):
    monkeypatch.setenv("PAGEPILOT_MAX_ACTIONS", "lots")
    monkeypatch.setenv("PAGEPILOT_GOAL_TIMEOUT", "soon")
    monkeypatch.setenv("PAGEPILOT_SETTLE_QUIET_MS", " ")
    config = RunnerConfig.from_env()
    assert config.max_actions == 100
    assert config.goal_timeout_s == 300.0
    assert config.settle_quiet_ms == 100
