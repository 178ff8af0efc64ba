"""Unit tests for appforge/sandbox/container.py.

The container runtime is never invoked; subprocess creation and the
runtime command helper are patched.
"""

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from appforge.exceptions import SandboxStartError
from appforge.sandbox.collector import LogCollector
from appforge.sandbox.container import (
    ContainerSandbox,
    check_runtime,
    parse_percent,
    parse_size,
    parse_stats,
    preview_uri,
)
from appforge.sandbox.models import ReadinessSource, ResourceLimits
from appforge.settings import Settings


def _reader(*lines: str) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for line in lines:
        reader.feed_data(f"{line}\n".encode())
    reader.feed_eof()
    return reader


def _process(code: int = 0, stdout: asyncio.StreamReader | None = None) -> MagicMock:
    process = MagicMock()
    process.returncode = None
    process.stdout = stdout or _reader()
    process.stderr = _reader()
    process.wait = AsyncMock(return_value=code)
    process.communicate = AsyncMock(return_value=(b"", b""))
    process.kill = MagicMock()
    return process


def _sandbox(settings: Settings, tmp_path: Path, **overrides) -> ContainerSandbox:
    workspace = tmp_path / "ws"
    workspace.mkdir(exist_ok=True)
    (workspace / "package.json").write_text("{}")
    if overrides:
        settings = settings.model_copy(update=overrides)
    collector = LogCollector("app-1", workspace / ".appforge.log")
    limits = ResourceLimits(memory_mb=256, cpu_limit=0.5)
    return ContainerSandbox("app-1", workspace, 9100, limits, collector, settings)


def _ok_run(*args, timeout=None):
    return (0, "", "")


# =============================================================================
# PARSING HELPERS
# =============================================================================


class TestParseSize:
    def test_binary_units(self):
        assert parse_size("12.5MiB") == int(12.5 * 1024 * 1024)
        assert parse_size("1GiB") == 1024**3

    def test_decimal_units(self):
        assert parse_size("3kB") == 3000
        assert parse_size("2MB") == 2_000_000

    def test_bare_bytes(self):
        assert parse_size("512B") == 512
        assert parse_size("42") == 42

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            parse_size("lots")
        with pytest.raises(ValueError):
            parse_size("3 parsecs")


class TestParseStats:
    def test_podman_list(self):
        payload = json.dumps([{"cpu_percent": 2.5, "mem_usage": 1048576}])
        sample = parse_stats(payload)
        assert sample is not None
        assert sample.cpu_percent == 2.5
        assert sample.memory_bytes == 1048576

    def test_docker_line(self):
        payload = '{"CPUPerc":"1.25%","MemUsage":"10MiB / 512MiB"}\n'
        sample = parse_stats(payload)
        assert sample is not None
        assert sample.cpu_percent == 1.25
        assert sample.memory_bytes == 10 * 1024 * 1024

    def test_empty_output(self):
        assert parse_stats("") is None
        assert parse_stats("[]") is None

    def test_percent_placeholder(self):
        assert parse_percent("--") == 0.0
        assert parse_percent(" 7.5% ") == 7.5


class TestPreviewUri:
    def test_prefers_root_index(self, tmp_path):
        (tmp_path / "index.html").write_text("<html></html>")
        (tmp_path / "about.html").write_text("<html></html>")
        assert preview_uri(tmp_path).endswith("/index.html")
        assert preview_uri(tmp_path).startswith("file://")

    def test_falls_back_to_first_page(self, tmp_path):
        (tmp_path / "public").mkdir()
        (tmp_path / "public" / "home.html").write_text("<html></html>")
        assert preview_uri(tmp_path).endswith("/public/home.html")

    def test_directory_when_no_pages(self, tmp_path):
        assert preview_uri(tmp_path) == tmp_path.resolve().as_uri()


# =============================================================================
# CONSTRUCTION
# =============================================================================


class TestContainerSandbox:
    def test_no_network_uses_preview_endpoint(self, test_settings, tmp_path):
        unit = _sandbox(test_settings, tmp_path)
        assert unit.endpoint is not None
        assert unit.endpoint.startswith("file://")

    def test_bridge_network_uses_http_endpoint(self, test_settings, tmp_path):
        unit = _sandbox(test_settings, tmp_path, container_network="bridge")
        assert unit.endpoint == "http://localhost:9100"

    def test_names_are_unique_per_unit(self, test_settings, tmp_path):
        first = _sandbox(test_settings, tmp_path)
        second = _sandbox(test_settings, tmp_path)
        assert first.image != second.image
        assert first.container_name.startswith("appforge-app-1-")

    def test_containerfile(self, test_settings, tmp_path):
        unit = _sandbox(
            test_settings,
            tmp_path,
            sandbox_install_command=["npm", "install", "--ignore-scripts"],
            sandbox_start_command=["npm", "start"],
        )
        descriptor = unit.containerfile()

        assert descriptor.startswith(f"FROM {test_settings.container_base_image}\n")
        assert 'RUN ["npm", "install", "--ignore-scripts"]' in descriptor
        assert f"USER {test_settings.container_user}" in descriptor
        assert "EXPOSE 9100" in descriptor
        assert 'CMD ["npm", "start"]' in descriptor


# =============================================================================
# CREATE
# =============================================================================


class TestCreate:
    async def test_build_then_create(self, test_settings, tmp_path):
        unit = _sandbox(test_settings, tmp_path)
        build = _process(0, stdout=_reader("STEP 1/8: FROM node:20-alpine", "COMMIT"))

        with (
            patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=build)) as spawn,
            patch.object(unit, "_run", new=AsyncMock(return_value=(0, "abc123", ""))) as run,
        ):
            await unit.create()

        build_args = spawn.await_args.args
        assert build_args[:4] == (test_settings.container_runtime_path, "build", "-t", unit.image)
        assert build_args[-1] == str(unit.workspace)
        assert not Path(build_args[5]).exists()

        create_args = run.await_args.args
        assert create_args[:3] == ("create", "--name", unit.container_name)
        assert create_args[-1] == unit.image
        assert "--network=none" in create_args
        assert "--read-only" in create_args
        assert "--cap-drop=ALL" in create_args
        assert "--security-opt=no-new-privileges" in create_args

        logs = unit.logs()
        assert "Building image..." in logs
        assert "STEP 1/8: FROM node:20-alpine" in logs

    async def test_build_failure_skips_create(self, test_settings, tmp_path):
        unit = _sandbox(test_settings, tmp_path)
        build = _process(1, stdout=_reader("Error: npm ERR! 404"))

        with (
            patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=build)),
            patch.object(unit, "_run", new=AsyncMock(side_effect=_ok_run)) as run,
        ):
            with pytest.raises(SandboxStartError, match="exit code 1"):
                await unit.create()

        run.assert_not_awaited()
        assert "Image build failed with exit code 1" in unit.logs()

    async def test_missing_runtime(self, test_settings, tmp_path):
        unit = _sandbox(test_settings, tmp_path, container_runtime_path="/nonexistent/podman")

        with patch(
            "asyncio.create_subprocess_exec",
            new=AsyncMock(side_effect=FileNotFoundError("podman")),
        ):
            with pytest.raises(SandboxStartError, match="not found"):
                await unit.create()

    async def test_create_failure(self, test_settings, tmp_path):
        unit = _sandbox(test_settings, tmp_path)

        with (
            patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=_process(0))),
            patch.object(unit, "_run", new=AsyncMock(return_value=(125, "", "name in use"))),
        ):
            with pytest.raises(SandboxStartError, match="creation failed"):
                await unit.create()

        assert "name in use" in unit.logs()


# =============================================================================
# START / STATS
# =============================================================================


class TestStart:
    async def test_marker_from_followed_logs(self, test_settings, tmp_path):
        unit = _sandbox(test_settings, tmp_path)
        follower = _process(0, stdout=_reader("webpack compiled", "Compiled successfully"))

        async def fake_run(*args, timeout=None):
            if args[0] == "wait":
                await asyncio.sleep(60)
            return (0, "", "")

        with (
            patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=follower)),
            patch.object(unit, "_run", new=AsyncMock(side_effect=fake_run)),
        ):
            outcome = await unit.start()
            await unit.stop()

        assert outcome.source == ReadinessSource.MARKER
        follower.kill.assert_called_once()

    async def test_start_failure(self, test_settings, tmp_path):
        unit = _sandbox(test_settings, tmp_path)

        with patch.object(unit, "_run", new=AsyncMock(return_value=(125, "", "no such container"))):
            with pytest.raises(SandboxStartError, match="start failed"):
                await unit.start()

    async def test_exit_before_ready(self, test_settings, tmp_path):
        unit = _sandbox(test_settings, tmp_path)
        follower = _process(0, stdout=_reader("Error: Cannot find module"))

        async def fake_run(*args, timeout=None):
            if args[0] == "wait":
                return (0, "1\n", "")
            return (0, "", "")

        with (
            patch("asyncio.create_subprocess_exec", new=AsyncMock(return_value=follower)),
            patch.object(unit, "_run", new=AsyncMock(side_effect=fake_run)),
        ):
            outcome = await unit.start()

        assert outcome.source == ReadinessSource.EXITED
        assert outcome.exit_code == 1

    async def test_stats(self, test_settings, tmp_path):
        unit = _sandbox(test_settings, tmp_path)
        unit._created = True
        payload = json.dumps([{"cpu_percent": 3.0, "mem_usage": 2048}])

        with patch.object(unit, "_run", new=AsyncMock(return_value=(0, payload, ""))):
            sample = await unit.stats()

        assert sample is not None
        assert sample.memory_bytes == 2048

    async def test_stats_before_create(self, test_settings, tmp_path):
        unit = _sandbox(test_settings, tmp_path)
        assert await unit.stats() is None


# =============================================================================
# STOP
# =============================================================================


class TestStop:
    async def test_every_step_runs_when_rm_fails(self, test_settings, tmp_path):
        unit = _sandbox(test_settings, tmp_path)
        unit._created = True
        unit._image_built = True

        async def fake_run(*args, timeout=None):
            if args[0] == "rm":
                return (1, "", "container is busy")
            return (0, "", "")

        with patch.object(unit, "_run", new=AsyncMock(side_effect=fake_run)) as run:
            await unit.stop()

        commands = [c.args[0] for c in run.await_args_list]
        assert commands == ["kill", "rm", "rmi"]
        assert not unit.workspace.exists()

    async def test_stop_before_create_only_removes_workspace(self, test_settings, tmp_path):
        unit = _sandbox(test_settings, tmp_path)

        with patch.object(unit, "_run", new=AsyncMock(side_effect=_ok_run)) as run:
            await unit.stop()

        run.assert_not_awaited()
        assert not unit.workspace.exists()


# =============================================================================
# RUNTIME CHECK
# =============================================================================


class TestCheckRuntime:
    async def test_runtime_missing(self):
        with patch(
            "asyncio.create_subprocess_exec",
            new=AsyncMock(side_effect=FileNotFoundError("podman")),
        ):
            result = await check_runtime("/nonexistent/podman", "node:20-alpine")

        assert result["runtime_available"] is False
        assert result["image_available"] is False
        assert "not found" in result["errors"][0]

    async def test_runtime_and_image_present(self):
        version = _process(0)
        version.returncode = 0
        version.communicate = AsyncMock(return_value=(b"podman version 5.0.0\n", b""))
        inspect = _process(0)
        inspect.returncode = 0

        with patch(
            "asyncio.create_subprocess_exec",
            new=AsyncMock(side_effect=[version, inspect]),
        ):
            result = await check_runtime("podman", "node:20-alpine")

        assert result["runtime_available"] is True
        assert result["runtime_version"] == "podman version 5.0.0"
        assert result["image_available"] is True
        assert result["errors"] == []

    async def test_image_missing(self):
        version = _process(0)
        version.returncode = 0
        inspect = _process(0)
        inspect.returncode = 125

        with patch(
            "asyncio.create_subprocess_exec",
            new=AsyncMock(side_effect=[version, inspect]),
        ):
            result = await check_runtime("podman", "node:20-alpine")

        assert result["runtime_available"] is True
        assert result["image_available"] is False
        assert "not found locally" in result["errors"][0]
