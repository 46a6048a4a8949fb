"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Put src on the path (development checkout)
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from procpipe.config import Config  # noqa: E402

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_CHILD_PATH = FIXTURES_DIR / "fake_child.py"


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Temporary working directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def fast_config() -> Config:
    """Config with a short reap grace period."""
    return Config(reap_timeout=2.0, reap_interval=0.005)


@pytest.fixture
def fake_child() -> list[str]:
    """argv prefix running the scriptable fake child."""
    return [sys.executable, str(FAKE_CHILD_PATH)]
