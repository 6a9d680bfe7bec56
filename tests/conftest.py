"""Pytest configuration and shared fixtures."""

import os
import sys
from pathlib import Path

import pytest

# Project root on sys.path so tests can import cnbdagger and tests.fakes
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from cnbdagger.config import Settings, reset_settings  # noqa: E402

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Isolate every test from the developer's CNB_* / DAGGER_* variables."""
    for key in list(os.environ):
        if key.startswith(("CNB_", "DAGGER_")):
            monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Settings:
    sandbox_root = tmp_path / "sandboxes"
    sandbox_root.mkdir()
    monkeypatch.setenv("CNB_BUILD_IMAGE", "cnbs/build:test")
    monkeypatch.setenv("CNB_RUN_IMAGE", "cnbs/run:test")
    monkeypatch.setenv("DAGGER_TMP_ROOT", str(sandbox_root))
    return Settings()


@pytest.fixture
def buildpack_root() -> Path:
    return FIXTURES / "hello_world_buildpack"


@pytest.fixture
def app_dir() -> Path:
    return FIXTURES / "simple_app"
