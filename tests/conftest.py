"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path (development checkout)
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from procflow import config as config_module
from procflow import registry as registry_module
from procflow.shell import Shell


@pytest.fixture(autouse=True)
def clean_config(monkeypatch: pytest.MonkeyPatch):
    """Start every test from the environment defaults without PROCFLOW_* overrides."""
    for name in list(os.environ):
        if name.startswith("PROCFLOW_"):
            monkeypatch.delenv(name, raising=False)
    config_module.reload_config()
    registry_module._registry = None
    yield
    config_module._config = None
    registry_module._registry = None


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Temporary working directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def sh() -> Shell:
    """Shell with short termination grace periods for signal tests."""
    config_module.configure(term_timeout=0.5, kill_timeout=0.3)
    return Shell()
