"""Host-process isolation strategy.

Runs the install step, then the start command, as child processes in their
own session inside the sandbox workspace.  Children get a scrubbed
environment (an explicit allowlist plus PORT), scripts and lifecycle hooks
are disabled on the package manager, and stopping a sandbox kills the whole
process tree, not just the direct child.

This strategy isolates far less than the container strategy; it is meant
for development and trusted hosts.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import signal
from pathlib import Path

import psutil

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
from appforge.settings import Settings

logger = logging.getLogger(__name__)

# StreamReader line limit for child output.
_READ_LIMIT = 1024 * 1024
# How long to wait for output pumps after the child exits.
_DRAIN_TIMEOUT_S = 2.0


def _terminate_tree(pid: int, grace_seconds: float) -> int:
    """SIGTERM a process and all its descendants, SIGKILL what survives.

    Runs in a worker thread (psutil calls block).

    Returns:
        Number of processes signalled
    """
    try:
        root = psutil.Process(pid)
        procs = root.children(recursive=True)
        procs.append(root)
    except psutil.Error:
        procs = []

    for proc in procs:
        with contextlib.suppress(psutil.Error):
            proc.terminate()
    _, alive = psutil.wait_procs(procs, timeout=grace_seconds)
    for proc in alive:
        with contextlib.suppress(psutil.Error):
            proc.kill()
    if alive:
        psutil.wait_procs(alive, timeout=grace_seconds)

    # Descendants re-parented after the leader died are still in its group.
    if hasattr(os, "killpg"):
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(pid, signal.SIGKILL)
    return len(procs)


class ProcessSupervisor:
    """Install-then-run pipeline for one sandbox using host processes.

    Usage:
        unit = ProcessSupervisor("app-1", workspace, 9000, limits, collector, settings)
        await unit.create()           # install; SandboxStartError on failure
        outcome = await unit.start()  # ready (marker / grace) or exited
        code = await unit.wait()
        await unit.stop()
    """

    kind = IsolationKind.PROCESS

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
        self.endpoint: str | None = f"http://{settings.sandbox_public_host}:{port}"

        self._install: asyncio.subprocess.Process | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._pumps: list[asyncio.Task] = []
        self._exited: asyncio.Task[int] | None = None
        self._watch = ReadinessWatch(settings.sandbox_ready_markers)
        self._ps_cache: dict[int, psutil.Process] = {}

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def _environment(self) -> dict[str, str]:
        env = {
            name: os.environ[name]
            for name in self.settings.sandbox_env_allowlist
            if name in os.environ
        }
        env.update(
            {
                "PORT": str(self.port),
                "BROWSER": "none",
                "NODE_ENV": "production",
                "NODE_OPTIONS": f"--max-old-space-size={self.limits.memory_mb}",
                "CI": "true",
            }
        )
        return env

    def _limit_resources(self):
        """Return a preexec_fn enforcing the memory ceiling, or None."""
        if not self.settings.sandbox_enforce_rlimits or os.name == "nt":
            return None
        memory_bytes = int(self.limits.memory_mb * 1024 * 1024)

        def _apply_limits():
            import resource

            resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))

        return _apply_limits

    async def _spawn(self, command: list[str], step: str) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.workspace),
                env=self._environment(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=_READ_LIMIT,
                preexec_fn=self._limit_resources(),
            )
        except OSError as exc:
            self.collector.append(f"{step} step could not start: {exc}")
            raise SandboxStartError(
                f"{step} step could not start: {exc}", sandbox_id=self.sandbox_id
            ) from exc

    def _start_pumps(
        self,
        process: asyncio.subprocess.Process,
        watch: ReadinessWatch | None = None,
    ) -> list[asyncio.Task]:
        assert process.stdout is not None and process.stderr is not None
        return [
            asyncio.create_task(
                pump_lines(process.stdout, self.collector, stream="stdout", watch=watch)
            ),
            asyncio.create_task(
                pump_lines(process.stderr, self.collector, stream="stderr", watch=watch)
            ),
        ]

    async def create(self) -> None:
        """Run the install step.  The run step is never started if it fails."""
        self.collector.append("Installing dependencies...")
        self._install = await self._spawn(list(self.settings.sandbox_install_command), "Install")
        pumps = self._start_pumps(self._install)
        code = await self._install.wait()
        await asyncio.wait(pumps, timeout=_DRAIN_TIMEOUT_S)
        for task in pumps:
            await cancel_task(task)
        if code != 0:
            self.collector.append(f"Install failed with exit code {code}")
            raise SandboxStartError(
                f"Install step failed with exit code {code}", sandbox_id=self.sandbox_id
            )
        self.collector.append("Dependencies installed")

    async def start(self) -> StartOutcome:
        """Launch the run step and wait for readiness or an early exit."""
        self.collector.append("Starting app...")
        self._process = await self._spawn(list(self.settings.sandbox_start_command), "Start")
        self._pumps = self._start_pumps(self._process, self._watch)
        self._exited = asyncio.create_task(self._wait_run(self._process))

        outcome = await await_readiness(
            self._watch,
            self._exited,
            self.settings.sandbox_ready_grace_seconds,
        )
        if outcome.source == ReadinessSource.GRACE_PERIOD:
            self.collector.append(
                f"No readiness marker after {self.settings.sandbox_ready_grace_seconds:g}s; "
                "process alive, treating as ready"
            )
        return outcome

    async def _wait_run(self, process: asyncio.subprocess.Process) -> int:
        code = await process.wait()
        await asyncio.wait(self._pumps, timeout=_DRAIN_TIMEOUT_S)
        self.collector.append(f"Process exited with code {code}")
        return code

    async def wait(self) -> int:
        if self._exited is None:
            raise SandboxError("Run step was never started", sandbox_id=self.sandbox_id)
        return await asyncio.shield(self._exited)

    async def stop(self) -> None:
        """Kill the install and run process trees, then delete the workspace.

        Every step runs even if an earlier one fails.
        """
        await run_teardown(
            self.sandbox_id,
            [
                ("kill-install", lambda: self._kill_tree(self._install)),
                ("kill-run", lambda: self._kill_tree(self._process)),
                ("drain-output", self._drain),
                ("close-log", self._close_log),
                ("remove-workspace", self._remove_workspace),
            ],
        )

    async def _kill_tree(self, process: asyncio.subprocess.Process | None) -> None:
        if process is None:
            return
        count = await asyncio.to_thread(
            _terminate_tree, process.pid, self.settings.sandbox_kill_grace_seconds
        )
        if count:
            logger.debug("Signalled %d processes for sandbox %s", count, self.sandbox_id)
        with contextlib.suppress(ProcessLookupError):
            await asyncio.wait_for(process.wait(), timeout=self.settings.sandbox_kill_grace_seconds + 1)

    async def _drain(self) -> None:
        for task in self._pumps:
            await cancel_task(task)
        await cancel_task(self._exited)

    async def _close_log(self) -> None:
        self.collector.close()

    async def _remove_workspace(self) -> None:
        if self.workspace.exists():
            await asyncio.to_thread(shutil.rmtree, self.workspace)

    def logs(self, tail: int = 100) -> str:
        return self.collector.tail(tail)

    async def stats(self) -> UsageSample | None:
        if self._process is None or self._process.returncode is not None:
            return None
        return await asyncio.to_thread(self._sample_tree, self._process.pid)

    def _sample_tree(self, pid: int) -> UsageSample | None:
        try:
            root = self._ps_cache.get(pid) or psutil.Process(pid)
            self._ps_cache[pid] = root
            procs = [root, *root.children(recursive=True)]
        except psutil.Error:
            return None

        cpu = 0.0
        memory = 0
        for proc in procs:
            cached = self._ps_cache.setdefault(proc.pid, proc)
            try:
                with cached.oneshot():
                    # First reading per process is 0.0; later ones are deltas.
                    cpu += cached.cpu_percent(interval=None)
                    memory += cached.memory_info().rss
            except psutil.Error:
                self._ps_cache.pop(proc.pid, None)
        return UsageSample(cpu_percent=cpu, memory_bytes=memory)
