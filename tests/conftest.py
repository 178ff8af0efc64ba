"""Shared test fixtures for AppForge.

Provides settings, sample bundles and registries wired to in-memory
isolation units.
"""

import json
import sys
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from appforge.sandbox.models import FileBundle
from appforge.sandbox.registry import SandboxRegistry
from appforge.settings import Settings
from tests.mocks import FakeUnitFactory

# Child programs standing in for the package manager in process tests.
INSTALL_OK = "print('added 3 packages', flush=True)"
READY_APP = "import time; print('Server started on port', flush=True); time.sleep(60)"


# =============================================================================
# SETTINGS
# =============================================================================


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    return tmp_path / "apps"


@pytest.fixture
def test_settings(workspace_root: Path) -> Settings:
    """Provide test settings with short timings and Python stand-in commands."""
    return Settings(
        environment="testing",
        debug=True,
        sandbox_workspace_root=workspace_root,
        sandbox_isolation="process",
        sandbox_base_port=9100,
        sandbox_timeout_seconds=60,
        sandbox_ready_grace_seconds=2.0,
        sandbox_kill_grace_seconds=1.0,
        sandbox_stats_interval_seconds=0.05,
        sandbox_install_command=[sys.executable, "-c", INSTALL_OK],
        sandbox_start_command=[sys.executable, "-c", READY_APP],
    )


@pytest.fixture
def mock_settings(test_settings: Settings, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Mock get_settings() to return test settings."""
    from appforge import settings

    monkeypatch.setattr(settings, "get_settings", lambda: test_settings)
    return test_settings


# =============================================================================
# BUNDLES
# =============================================================================


def make_bundle(**extra: str) -> FileBundle:
    """Minimal valid bundle: manifest plus entry point, with optional extra files."""
    files: FileBundle = {
        "package.json": json.dumps(
            {
                "name": "generated-app",
                "version": "1.0.0",
                "main": "index.js",
                "scripts": {"start": "node index.js"},
            }
        ),
        "index.js": "const http = require('http');\nconsole.log('ready');\n",
    }
    files.update(extra)
    return files


@pytest.fixture
def sample_bundle() -> FileBundle:
    return make_bundle()


# =============================================================================
# REGISTRY
# =============================================================================


@pytest.fixture
def fake_units() -> FakeUnitFactory:
    return FakeUnitFactory()


@pytest.fixture
async def registry(
    test_settings: Settings,
    fake_units: FakeUnitFactory,
) -> AsyncGenerator[SandboxRegistry, None]:
    """Registry backed by in-memory units; shut down after the test."""
    reg = SandboxRegistry(test_settings, strategy_factory=fake_units)
    await reg.startup()
    yield reg
    await reg.shutdown()
