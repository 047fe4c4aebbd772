"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from multitask_runner.config import reload_config  # noqa: E402


@pytest.fixture(autouse=True)
def clean_config(monkeypatch: pytest.MonkeyPatch):
    """Run every test with no MTR_* variables set."""
    for name in list(os.environ):
        if name.startswith("MTR_"):
            monkeypatch.delenv(name)
    reload_config()
    yield
    reload_config()
