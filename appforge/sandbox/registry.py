"""Sandbox registry.

The single source of truth for what is currently running: an id -> sandbox
map guarded by one asyncio lock.  Only map mutations, port allocation,
state transitions and the final rename of a staged workspace happen under
the lock; validation, staging, installs, builds and teardown all run
outside it.  A workspace is only placed once every earlier owner of the
id has finished its teardown.

Each sandbox's pipeline (install/build, start, wait) runs as its own task.
Execution timeouts are timers owned here, not by the isolation strategy,
so ``stop_all()`` can cancel every pending timer before tearing anything
down.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from appforge.exceptions import (
    ConfigurationError,
    PolicyViolationError,
    SandboxConflictError,
    SandboxError,
    SandboxStartError,
)
from appforge.sandbox.base import IsolationStrategy, cancel_task
from appforge.sandbox.collector import LogCollector
from appforge.sandbox.container import ContainerSandbox
from appforge.sandbox.models import (
    ALLOWED_TRANSITIONS,
    FileBundle,
    IsolationKind,
    ResourceLimits,
    SandboxState,
    SandboxView,
    UpdateResult,
)
from appforge.sandbox.process import ProcessSupervisor
from appforge.sandbox.validator import LOG_FILENAME, SecurityValidator, ValidationPolicy
from appforge.sandbox.workspace import WorkspaceLimits, WorkspaceMaterializer, check_sandbox_id
from appforge.settings import Settings

logger = logging.getLogger(__name__)

StrategyFactory = Callable[
    [IsolationKind, str, Path, int, ResourceLimits, LogCollector, Settings],
    IsolationStrategy,
]


def default_strategy_factory(
    kind: IsolationKind,
    sandbox_id: str,
    workspace: Path,
    port: int,
    limits: ResourceLimits,
    collector: LogCollector,
    settings: Settings,
) -> IsolationStrategy:
    """Build the isolation unit for a sandbox from its configured kind."""
    if kind == IsolationKind.CONTAINER:
        return ContainerSandbox(sandbox_id, workspace, port, limits, collector, settings)
    return ProcessSupervisor(sandbox_id, workspace, port, limits, collector, settings)


@dataclass
class _Sandbox:
    """Live record for one sandbox id.  Mutated only under the registry lock."""

    id: str
    isolation: IsolationKind
    port: int
    limits: ResourceLimits
    state: SandboxState = SandboxState.STARTING
    reason: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_monotonic: float = field(default_factory=time.monotonic)
    workspace: Path | None = None
    collector: LogCollector | None = None
    unit: IsolationStrategy | None = None
    timer: asyncio.TimerHandle | None = None
    pipeline: asyncio.Task | None = None
    sampler: asyncio.Task | None = None
    settled: asyncio.Event = field(default_factory=asyncio.Event)
    retired: asyncio.Event = field(default_factory=asyncio.Event)


class SandboxRegistry:
    """Owns every live sandbox in this process.

    Usage:
        registry = SandboxRegistry(get_settings())
        await registry.startup()
        view = await registry.execute("app-1", files, {"react": "^18.2.0"})
        await registry.status("app-1")
        await registry.shutdown()
    """

    def __init__(
        self,
        settings: Settings,
        validator: SecurityValidator | None = None,
        materializer: WorkspaceMaterializer | None = None,
        strategy_factory: StrategyFactory | None = None,
    ) -> None:
        self.settings = settings
        self.validator = validator or SecurityValidator(ValidationPolicy.from_settings(settings))
        self.materializer = materializer or WorkspaceMaterializer(
            settings.sandbox_workspace_root, WorkspaceLimits.from_settings(settings)
        )
        self._strategy_factory = strategy_factory or default_strategy_factory
        self.default_limits = ResourceLimits(
            memory_mb=settings.sandbox_memory_mb,
            cpu_limit=settings.sandbox_cpu_limit,
            timeout_seconds=settings.sandbox_timeout_seconds,
        )

        self._lock = asyncio.Lock()
        self._sandboxes: dict[str, _Sandbox] = {}
        # Removed entries whose teardown has not finished yet.
        self._retiring: dict[str, list[_Sandbox]] = {}
        self._ports = itertools.count(settings.sandbox_base_port)
        self._background: set[asyncio.Task] = set()
        self._closed = False

    # -------------------------------------------------------------------------
    # Lifecycle of the registry itself
    # -------------------------------------------------------------------------

    async def startup(self) -> None:
        """Create the workspace root and clear staging leftovers."""
        root = await asyncio.to_thread(self.materializer.ensure_base_dir)
        await asyncio.to_thread(self.materializer.sweep_staging)
        self._closed = False
        logger.info("Sandbox registry ready (workspace root: %s)", root)

    async def shutdown(self) -> None:
        """Stop every sandbox and refuse further executions."""
        async with self._lock:
            self._closed = True
        await self.stop_all()
        logger.info("Sandbox registry shut down")

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def execute(
        self,
        sandbox_id: str,
        files: FileBundle,
        dependencies: Mapping[str, str] | None = None,
        limits: ResourceLimits | None = None,
        *,
        isolation: IsolationKind | str | None = None,
        redeploy: bool = False,
        wait: bool = False,
    ) -> SandboxView:
        """Validate, materialize and start a bundle.

        Returns as soon as the pipeline is scheduled unless ``wait`` is set,
        in which case it returns once the sandbox is running or terminal.

        Raises:
            PolicyViolationError: The bundle failed validation
            MaterializationError: A path escaped or a limit was exceeded
            SandboxConflictError: A live sandbox owns the id and redeploy is off
            ConfigurationError: The requested isolation is not permitted
        """
        check_sandbox_id(sandbox_id)
        kind = self._resolve_isolation(isolation)

        verdict = self.validator.validate(files, dependencies)
        if not verdict.passed:
            logger.info(
                "Rejected bundle for sandbox %s: %d violation(s)",
                sandbox_id,
                len(verdict.violations),
            )
            raise PolicyViolationError(verdict)

        limits = limits or self.default_limits
        async with self._lock:
            if self._closed:
                raise SandboxError("Registry is shut down", sandbox_id=sandbox_id)
            previous = self._sandboxes.get(sandbox_id)
            if previous is not None:
                if not previous.state.is_terminal and not redeploy:
                    raise SandboxConflictError(
                        f"Sandbox {sandbox_id} is {previous.state}; pass redeploy to replace it",
                        sandbox_id=sandbox_id,
                    )
                del self._sandboxes[sandbox_id]
                self._cancel_timer(previous)
                self._retire(previous)
            entry = _Sandbox(
                id=sandbox_id,
                isolation=kind,
                port=next(self._ports),
                limits=limits,
            )
            self._sandboxes[sandbox_id] = entry

        if previous is not None:
            logger.info("Replacing sandbox %s (was %s)", sandbox_id, previous.state)
            await self._teardown(previous)

        try:
            staging = await asyncio.to_thread(self.materializer.stage, sandbox_id, files)
        except BaseException:
            async with self._lock:
                if self._sandboxes.get(sandbox_id) is entry:
                    del self._sandboxes[sandbox_id]
            entry.settled.set()
            raise

        # Earlier owners of the id may still be deleting their workspace.
        await self._await_retired(sandbox_id)

        async with self._lock:
            superseded = self._sandboxes.get(sandbox_id) is not entry
            if not superseded:
                workspace: Path | None = None
                try:
                    workspace = await asyncio.to_thread(
                        self.materializer.place, sandbox_id, staging
                    )
                    collector = LogCollector(
                        sandbox_id,
                        workspace / LOG_FILENAME,
                        max_lines=self.settings.sandbox_log_buffer_lines,
                    )
                    unit = self._strategy_factory(
                        kind, sandbox_id, workspace, entry.port, limits, collector, self.settings
                    )
                except BaseException:
                    del self._sandboxes[sandbox_id]
                    if workspace is not None:
                        await asyncio.to_thread(self.materializer.remove, sandbox_id)
                    entry.settled.set()
                    raise
                entry.workspace = workspace
                entry.collector = collector
                entry.unit = unit
                loop = asyncio.get_running_loop()
                entry.timer = loop.call_later(limits.timeout_seconds, self._on_timeout, entry)
                entry.pipeline = asyncio.create_task(
                    self._run_pipeline(entry), name=f"sandbox-{sandbox_id}"
                )

        if superseded:
            # Stopped or replaced while staging; the id's workspace belongs to someone else.
            await asyncio.to_thread(self.materializer.discard, staging)
            entry.state = SandboxState.STOPPED
            entry.settled.set()
            return self._view(entry)

        logger.info("Sandbox %s starting (%s, port %d)", sandbox_id, kind, entry.port)
        if wait:
            settled = await self.wait_until_settled(sandbox_id)
            return settled or self._view(entry)
        return self._view(entry)

    async def _await_retired(self, sandbox_id: str) -> None:
        for retiring in list(self._retiring.get(sandbox_id, ())):
            await retiring.retired.wait()

    async def update(self, sandbox_id: str, files: FileBundle) -> UpdateResult | None:
        """Hot update: rewrite files in place without reinstalling or restarting.

        Container sandboxes keep serving the image they were built from, so
        their result carries ``restart_required``.

        Returns:
            UpdateResult, or None if no sandbox owns the id
        """
        async with self._lock:
            entry = self._sandboxes.get(sandbox_id)
        if entry is None or entry.unit is None or entry.collector is None:
            return None

        verdict = self.validator.validate(files, partial=True)
        if not verdict.passed:
            logger.info(
                "Rejected update for sandbox %s: %d violation(s)",
                sandbox_id,
                len(verdict.violations),
            )
            raise PolicyViolationError(verdict)

        written = await asyncio.to_thread(self.materializer.update, sandbox_id, files)
        # Containers run the image built from the workspace at execute time.
        restart_required = entry.isolation == IsolationKind.CONTAINER
        if restart_required:
            entry.collector.append("Files updated; redeploy to apply them to the container")
        else:
            entry.collector.append("Files updated, hot reloading...")
        logger.info("Updated %d file(s) in sandbox %s", written, sandbox_id)
        return UpdateResult(
            files_written=written,
            endpoint=entry.unit.endpoint,
            restart_required=restart_required,
        )

    async def status(self, sandbox_id: str) -> SandboxView | None:
        async with self._lock:
            entry = self._sandboxes.get(sandbox_id)
            return self._view(entry) if entry is not None else None

    async def list(self) -> list[SandboxView]:
        async with self._lock:
            entries = sorted(self._sandboxes.values(), key=lambda e: e.started_monotonic)
            return [self._view(entry) for entry in entries]

    async def logs(self, sandbox_id: str, tail: int = 100) -> str:
        """Last ``tail`` lines of output, clamped to the configured maximum."""
        tail = max(0, min(tail, self.settings.sandbox_log_tail_max))
        async with self._lock:
            entry = self._sandboxes.get(sandbox_id)
        if entry is None or entry.collector is None:
            return ""
        return entry.collector.tail(tail)

    async def stop(self, sandbox_id: str) -> None:
        """Stop a sandbox and reclaim its workspace.  Unknown ids are a no-op."""
        async with self._lock:
            entry = self._sandboxes.pop(sandbox_id, None)
            if entry is None:
                return
            self._cancel_timer(entry)
            self._retire(entry)
        logger.info("Stopping sandbox %s", sandbox_id)
        await self._teardown(entry)

    async def stop_all(self) -> None:
        """Cancel every timer, then tear down every sandbox."""
        async with self._lock:
            entries = list(self._sandboxes.values())
            self._sandboxes.clear()
            for entry in entries:
                self._cancel_timer(entry)
                self._retire(entry)
        if entries:
            logger.info("Stopping %d sandbox(es)", len(entries))
        await asyncio.gather(*(self._teardown(entry) for entry in entries))
        for task in list(self._background):
            await cancel_task(task)

    async def wait_until_settled(
        self, sandbox_id: str, timeout: float | None = None
    ) -> SandboxView | None:
        """Wait until a sandbox is running or terminal.

        Returns:
            Current view, or None if the sandbox is gone

        Raises:
            TimeoutError: Still starting after ``timeout`` seconds
        """
        async with self._lock:
            entry = self._sandboxes.get(sandbox_id)
        if entry is None:
            return None
        await asyncio.wait_for(entry.settled.wait(), timeout=timeout)
        return await self.status(sandbox_id)

    async def counts(self) -> dict[str, int]:
        """Number of sandboxes per state."""
        async with self._lock:
            counts = {state.value: 0 for state in SandboxState}
            for entry in self._sandboxes.values():
                counts[entry.state.value] += 1
            return counts

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _resolve_isolation(self, isolation: IsolationKind | str | None) -> IsolationKind:
        kind = IsolationKind(isolation or self.settings.sandbox_isolation)
        if (
            kind == IsolationKind.PROCESS
            and self.settings.environment == "production"
            and not self.settings.sandbox_allow_process_in_production
        ):
            raise ConfigurationError(
                "Process isolation is disabled in production. Use container isolation "
                "or set SANDBOX_ALLOW_PROCESS_IN_PRODUCTION=true."
            )
        return kind

    def _view(self, entry: _Sandbox) -> SandboxView:
        return SandboxView(
            id=entry.id,
            isolation=entry.isolation,
            status=entry.state,
            endpoint=entry.unit.endpoint if entry.unit is not None else None,
            port=entry.port,
            started_at=entry.started_at,
            uptime_seconds=round(time.monotonic() - entry.started_monotonic, 3),
            limits=entry.limits,
            reason=entry.reason,
            usage=entry.collector.latest_usage if entry.collector is not None else None,
        )

    @staticmethod
    def _cancel_timer(entry: _Sandbox) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

    async def _transition(
        self, entry: _Sandbox, state: SandboxState, reason: str | None = None
    ) -> bool:
        async with self._lock:
            if self._sandboxes.get(entry.id) is not entry:
                return False
            if state not in ALLOWED_TRANSITIONS[entry.state]:
                logger.debug("Ignoring %s -> %s for sandbox %s", entry.state, state, entry.id)
                return False
            previous = entry.state
            entry.state = state
            entry.reason = reason
        logger.info(
            "Sandbox %s: %s -> %s%s", entry.id, previous, state, f" ({reason})" if reason else ""
        )
        entry.settled.set()
        return True

    async def _run_pipeline(self, entry: _Sandbox) -> None:
        """install/build -> start -> wait, recording each outcome as state."""
        assert entry.unit is not None
        unit = entry.unit
        try:
            await unit.create()
            outcome = await unit.start()
            if not outcome.ready:
                code = outcome.exit_code
                state = SandboxState.STOPPED if code == 0 else SandboxState.ERROR
                await self._transition(entry, state, f"exited with code {code} before ready")
                return

            await self._transition(entry, SandboxState.RUNNING)
            entry.sampler = asyncio.create_task(self._sample_usage(entry))
            code = await unit.wait()
            await cancel_task(entry.sampler)
            state = SandboxState.STOPPED if code == 0 else SandboxState.ERROR
            await self._transition(entry, state, f"exited with code {code}")
        except SandboxStartError as e:
            await self._transition(entry, SandboxState.ERROR, str(e))
        except Exception as e:
            logger.exception("Pipeline for sandbox %s failed", entry.id)
            await self._transition(entry, SandboxState.ERROR, f"internal error: {e}")

    async def _sample_usage(self, entry: _Sandbox) -> None:
        assert entry.unit is not None and entry.collector is not None
        interval = self.settings.sandbox_stats_interval_seconds
        while entry.state == SandboxState.RUNNING:
            try:
                sample = await entry.unit.stats()
            except Exception as e:
                logger.debug("Usage sample failed for sandbox %s: %s", entry.id, e)
                sample = None
            if sample is not None:
                entry.collector.record_usage(sample)
            await asyncio.sleep(interval)

    def _on_timeout(self, entry: _Sandbox) -> None:
        task = asyncio.create_task(self._expire(entry), name=f"sandbox-timeout-{entry.id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _expire(self, entry: _Sandbox) -> None:
        async with self._lock:
            if self._sandboxes.get(entry.id) is not entry:
                return
            del self._sandboxes[entry.id]
            entry.timer = None
            self._retire(entry)
        logger.warning(
            "Execution timeout reached for sandbox %s after %gs (state %s)",
            entry.id,
            entry.limits.timeout_seconds,
            entry.state,
        )
        entry.reason = "execution timeout"
        if entry.collector is not None:
            entry.collector.append("Execution timeout reached, stopping app")
        await self._teardown(entry)

    def _retire(self, entry: _Sandbox) -> None:
        """Record a removed entry until ``_teardown`` has finished with it.  Lock held."""
        self._retiring.setdefault(entry.id, []).append(entry)

    async def _teardown(self, entry: _Sandbox) -> None:
        """Cancel the entry's tasks, stop its unit and forget its workspace."""
        try:
            await cancel_task(entry.sampler)
            if entry.pipeline is not asyncio.current_task():
                await cancel_task(entry.pipeline)
            if entry.unit is not None:
                try:
                    await entry.unit.stop()
                except Exception:
                    logger.exception("Teardown of sandbox %s failed", entry.id)
            self.materializer.forget(entry.id)
        finally:
            retiring = self._retiring.get(entry.id, [])
            if entry in retiring:
                retiring.remove(entry)
            if not retiring:
                self._retiring.pop(entry.id, None)
            entry.retired.set()
            entry.settled.set()
        logger.info("Sandbox %s torn down", entry.id)
