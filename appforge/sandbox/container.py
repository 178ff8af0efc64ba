"""Container isolation strategy.

Builds an image from the materialized workspace using a generated build
descriptor, then runs it through a podman- or docker-compatible CLI with
the restrictions in ``ContainerPolicy``.  All runtime interaction goes
through asyncio subprocesses so nothing blocks the event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Any

import httpx

from appforge.exceptions import SandboxError, SandboxStartError
from appforge.sandbox.base import (
    ReadinessWatch,
    await_readiness,
    cancel_task,
    pump_lines,
    run_teardown,
)
from appforge.sandbox.collector import LogCollector
from appforge.sandbox.models import (
    IsolationKind,
    ReadinessSource,
    ResourceLimits,
    StartOutcome,
    UsageSample,
)
from appforge.sandbox.policies import ContainerPolicy
from appforge.settings import Settings

logger = logging.getLogger(__name__)

# Timeout for short runtime commands (start, kill, rm, stats, ...)
_RUNTIME_CMD_TIMEOUT = 30
_PROBE_TIMEOUT = 2.0
_READ_LIMIT = 1024 * 1024

_SIZE_UNITS = {
    "b": 1,
    "kb": 1000,
    "kib": 1024,
    "mb": 1000**2,
    "mib": 1024**2,
    "gb": 1000**3,
    "gib": 1024**3,
    "tb": 1000**4,
    "tib": 1024**4,
}
_SIZE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*([A-Za-z]*)\s*$")


def parse_size(value: str) -> int:
    """Parse a runtime size string such as ``12.5MiB`` or ``3kB`` into bytes."""
    match = _SIZE.match(value)
    if not match:
        raise ValueError(f"Unrecognised size: {value!r}")
    number, unit = match.groups()
    factor = _SIZE_UNITS.get(unit.lower() or "b")
    if factor is None:
        raise ValueError(f"Unrecognised size unit: {unit!r}")
    return int(float(number) * factor)


def parse_percent(value: Any) -> float:
    if isinstance(value, int | float):
        return float(value)
    text = str(value).strip().rstrip("%").strip()
    return float(text) if text and text != "--" else 0.0


def parse_stats(payload: str) -> UsageSample | None:
    """Turn ``stats --no-stream --format json`` output into a usage sample.

    Handles podman (a JSON list with ``cpu_percent``/``mem_usage``) and
    docker (one JSON object per line with ``CPUPerc``/``MemUsage``).
    """
    payload = payload.strip()
    if not payload:
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        data = json.loads(payload.splitlines()[0])
    if isinstance(data, list):
        if not data:
            return None
        data = data[0]

    cpu = parse_percent(data.get("cpu_percent", data.get("CPUPerc", data.get("CPU", 0))))
    usage = data.get("mem_usage", data.get("MemUsage", "0B"))
    if isinstance(usage, int | float):
        memory = int(usage)
    else:
        memory = parse_size(str(usage).split("/")[0])
    return UsageSample(cpu_percent=cpu, memory_bytes=memory)


def preview_uri(workspace: Path) -> str:
    """Static preview location for a sandbox that has no network.

    ``index.html`` at the workspace root, else the first HTML file found,
    else the workspace directory itself.
    """
    index = workspace / "index.html"
    if index.is_file():
        return index.resolve().as_uri()
    pages = sorted(p for p in workspace.rglob("*.html") if p.is_file())
    if pages:
        return pages[0].resolve().as_uri()
    return workspace.resolve().as_uri()


class ContainerSandbox:
    """Build-then-run pipeline for one sandbox inside a container.

    Usage:
        unit = ContainerSandbox("app-1", workspace, 9000, limits, collector, settings)
        await unit.create()           # build image + create container
        outcome = await unit.start()
        await unit.stop()             # kill, rm, rmi, remove workspace
    """

    kind = IsolationKind.CONTAINER

    def __init__(
        self,
        sandbox_id: str,
        workspace: Path,
        port: int,
        limits: ResourceLimits,
        collector: LogCollector,
        settings: Settings,
    ) -> None:
        self.sandbox_id = sandbox_id
        self.workspace = workspace
        self.port = port
        self.limits = limits
        self.collector = collector
        self.settings = settings
        self.runtime = settings.container_runtime_path
        self.policy = ContainerPolicy.from_settings(settings, sandbox_id, port, limits)

        suffix = uuid.uuid4().hex[:8]
        self.image = f"appforge-{sandbox_id.lower()}:{suffix}"
        self.container_name = f"appforge-{sandbox_id}-{suffix}"

        if self.policy.has_network:
            self.endpoint: str | None = f"http://{settings.sandbox_public_host}:{port}"
        else:
            self.endpoint = preview_uri(workspace)

        self._image_built = False
        self._created = False
        self._follower: asyncio.subprocess.Process | None = None
        self._pumps: list[asyncio.Task] = []
        self._exited: asyncio.Task[int] | None = None
        self._watch = ReadinessWatch(settings.sandbox_ready_markers)

    # -------------------------------------------------------------------------
    # Runtime CLI
    # -------------------------------------------------------------------------

    async def _run(self, *args: str, timeout: float | None = _RUNTIME_CMD_TIMEOUT) -> tuple[int, str, str]:
        """Run one runtime command and return (exit code, stdout, stderr)."""
        process = await asyncio.create_subprocess_exec(
            self.runtime,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            raise
        return (
            process.returncode or 0,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def _expect_ok(self, *args: str) -> str:
        code, stdout, stderr = await self._run(*args)
        if code != 0:
            raise SandboxError(
                f"'{self.runtime} {args[0]}' failed ({code}): {stderr.strip()}",
                sandbox_id=self.sandbox_id,
            )
        return stdout

    def containerfile(self) -> str:
        """Generated build descriptor for the workspace."""
        user = self.settings.container_user
        return "\n".join(
            [
                f"FROM {self.settings.container_base_image}",
                "WORKDIR /app",
                f"COPY --chown={user} . /app",
                f"RUN {json.dumps(list(self.settings.sandbox_install_command))}",
                f"USER {user}",
                f"ENV NODE_ENV=production PORT={self.port}",
                f"EXPOSE {self.port}",
                f"CMD {json.dumps(list(self.settings.sandbox_start_command))}",
                "",
            ]
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create(self) -> None:
        """Build the image and create (but not start) the container.

        Raises:
            SandboxStartError: Runtime missing, build failed or timed out,
                or container creation failed
        """
        self.collector.append("Building image...")
        with tempfile.NamedTemporaryFile(
            mode="w",
            suffix=".Containerfile",
            delete=False,
        ) as f:
            f.write(self.containerfile())
            descriptor = Path(f.name)

        try:
            await self._build(descriptor)
        finally:
            descriptor.unlink(missing_ok=True)

        code, stdout, stderr = await self._run(
            "create",
            "--name",
            self.container_name,
            *self.policy.to_podman_args(),
            self.image,
        )
        if code != 0:
            self.collector.append(f"Container creation failed: {stderr.strip()}")
            raise SandboxStartError(
                f"Container creation failed ({code})", sandbox_id=self.sandbox_id
            )
        self._created = True
        logger.debug("Created container %s (%s)", self.container_name, stdout.strip()[:12])

    async def _build(self, descriptor: Path) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self.runtime,
                "build",
                "-t",
                self.image,
                "-f",
                str(descriptor),
                str(self.workspace),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=_READ_LIMIT,
            )
        except FileNotFoundError as exc:
            self.collector.append(f"Container runtime not found at '{self.runtime}'")
            raise SandboxStartError(
                f"Container runtime not found at '{self.runtime}'", sandbox_id=self.sandbox_id
            ) from exc

        assert process.stdout is not None
        pump = asyncio.create_task(pump_lines(process.stdout, self.collector, stream="build"))
        try:
            code = await asyncio.wait_for(
                process.wait(), timeout=self.settings.container_build_timeout_seconds
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            self.collector.append("Image build timed out")
            raise SandboxStartError(
                "Image build timed out", sandbox_id=self.sandbox_id, timeout=True
            ) from None
        finally:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(asyncio.shield(pump), timeout=2.0)
            await cancel_task(pump)

        if code != 0:
            self.collector.append(f"Image build failed with exit code {code}")
            raise SandboxStartError(
                f"Image build failed with exit code {code}", sandbox_id=self.sandbox_id
            )
        self._image_built = True

    async def start(self) -> StartOutcome:
        """Start the container, follow its logs and wait for readiness."""
        self.collector.append("Starting container...")
        code, _, stderr = await self._run("start", self.container_name)
        if code != 0:
            self.collector.append(f"Container start failed: {stderr.strip()}")
            raise SandboxStartError(
                f"Container start failed ({code})", sandbox_id=self.sandbox_id
            )

        self._follower = await asyncio.create_subprocess_exec(
            self.runtime,
            "logs",
            "--follow",
            self.container_name,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_READ_LIMIT,
        )
        assert self._follower.stdout is not None and self._follower.stderr is not None
        self._pumps = [
            asyncio.create_task(
                pump_lines(self._follower.stdout, self.collector, stream="stdout", watch=self._watch)
            ),
            asyncio.create_task(
                pump_lines(self._follower.stderr, self.collector, stream="stderr", watch=self._watch)
            ),
        ]
        self._exited = asyncio.create_task(self._wait_container())

        outcome = await await_readiness(
            self._watch,
            self._exited,
            self.settings.sandbox_ready_grace_seconds,
            probe=self._probe if self.policy.has_network else None,
        )
        if outcome.source == ReadinessSource.GRACE_PERIOD:
            self.collector.append("No readiness signal; container alive, treating as ready")
        return outcome

    async def _probe(self) -> bool:
        async with httpx.AsyncClient(timeout=_PROBE_TIMEOUT) as client:
            response = await client.get(f"http://127.0.0.1:{self.port}/")
        return response.status_code < 500

    async def _wait_container(self) -> int:
        code, stdout, _ = await self._run("wait", self.container_name, timeout=None)
        exit_code = -1
        if code == 0:
            with contextlib.suppress(ValueError, IndexError):
                exit_code = int(stdout.strip().splitlines()[-1])
        self.collector.append(f"Container exited with code {exit_code}")
        return exit_code

    async def wait(self) -> int:
        if self._exited is None:
            raise SandboxError("Container was never started", sandbox_id=self.sandbox_id)
        return await asyncio.shield(self._exited)

    async def stop(self) -> None:
        """Force-stop and remove the container, remove the image and workspace.

        Each step is attempted even if an earlier one failed.
        """
        await run_teardown(
            self.sandbox_id,
            [
                ("stop-log-follower", self._stop_follower),
                ("kill-container", self._kill_container),
                ("remove-container", self._remove_container),
                ("remove-image", self._remove_image),
                ("close-log", self._close_log),
                ("remove-workspace", self._remove_workspace),
            ],
        )

    async def _stop_follower(self) -> None:
        if self._follower is not None and self._follower.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._follower.kill()
            await self._follower.wait()
        for task in self._pumps:
            await cancel_task(task)
        await cancel_task(self._exited)

    async def _kill_container(self) -> None:
        if not self._created:
            return
        code, _, stderr = await self._run("kill", self.container_name)
        if code != 0:
            # Normal when the container already exited.
            logger.debug("kill %s returned %d: %s", self.container_name, code, stderr.strip())

    async def _remove_container(self) -> None:
        if self._created:
            await self._expect_ok("rm", "-f", self.container_name)
            self._created = False

    async def _remove_image(self) -> None:
        if self._image_built:
            await self._expect_ok("rmi", "-f", self.image)
            self._image_built = False

    async def _close_log(self) -> None:
        self.collector.close()

    async def _remove_workspace(self) -> None:
        if self.workspace.exists():
            await asyncio.to_thread(shutil.rmtree, self.workspace)

    def logs(self, tail: int = 100) -> str:
        return self.collector.tail(tail)

    async def stats(self) -> UsageSample | None:
        if not self._created:
            return None
        try:
            code, stdout, _ = await self._run(
                "stats", "--no-stream", "--format", "json", self.container_name
            )
        except (TimeoutError, OSError) as e:
            logger.debug("stats failed for %s: %s", self.container_name, e)
            return None
        if code != 0:
            return None
        try:
            return parse_stats(stdout)
        except (ValueError, AttributeError) as e:
            logger.debug("Unparseable stats for %s: %s", self.container_name, e)
            return None


async def check_runtime(runtime_path: str, image: str) -> dict[str, Any]:
    """Check whether the container runtime and base image are available.

    Returns:
        Dictionary with runtime status information
    """
    result: dict[str, Any] = {
        "runtime": runtime_path,
        "runtime_available": False,
        "image": image,
        "image_available": False,
        "errors": [],
    }

    try:
        process = await asyncio.create_subprocess_exec(
            runtime_path,
            "version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await process.communicate()
        if process.returncode == 0:
            result["runtime_available"] = True
            result["runtime_version"] = stdout.decode().strip()
        else:
            result["errors"].append(f"'{runtime_path} version' exited with {process.returncode}")
    except FileNotFoundError:
        result["errors"].append(f"Container runtime not found at '{runtime_path}'")

    if result["runtime_available"]:
        try:
            process = await asyncio.create_subprocess_exec(
                runtime_path,
                "image",
                "inspect",
                image,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            await process.communicate()
            result["image_available"] = process.returncode == 0
            if not result["image_available"]:
                result["errors"].append(f"Image '{image}' not found locally")
        except Exception as e:
            result["errors"].append(f"Error checking image: {e}")

    return result


__all__ = [
    "ContainerSandbox",
    "check_runtime",
    "parse_size",
    "parse_stats",
    "preview_uri",
]
