"""In-memory isolation units for registry and API tests.

``FakeUnit`` implements the isolation capability interface without
spawning anything, and lets tests script install failures, early exits
and slow readiness.
"""

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path

from appforge.exceptions import SandboxStartError
from appforge.sandbox.collector import LogCollector
from appforge.sandbox.models import (
    IsolationKind,
    ReadinessSource,
    ResourceLimits,
    StartOutcome,
    UsageSample,
)
from appforge.settings import Settings


@dataclass
class UnitScript:
    """Behaviour of the next units built by a FakeUnitFactory."""

    install_fails: bool = False
    exit_before_ready: int | None = None
    ready_delay: float = 0.0
    create_gate: asyncio.Event | None = None


class FakeUnit:
    kind = IsolationKind.PROCESS

    def __init__(
        self,
        sandbox_id: str,
        workspace: Path,
        port: int,
        limits: ResourceLimits,
        collector: LogCollector,
        settings: Settings,
        script: UnitScript,
    ) -> None:
        self.sandbox_id = sandbox_id
        self.workspace = workspace
        self.port = port
        self.limits = limits
        self.collector = collector
        self.script = script
        self.endpoint: str | None = f"http://localhost:{port}"
        self.events: list[str] = []
        self.stop_calls = 0
        self._exit: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    async def create(self) -> None:
        self.events.append("create")
        self.collector.append("Installing dependencies...")
        if self.script.create_gate is not None:
            await self.script.create_gate.wait()
        if self.script.install_fails:
            self.collector.append("npm ERR! install failed")
            raise SandboxStartError("Install step failed with exit code 1", sandbox_id=self.sandbox_id)

    async def start(self) -> StartOutcome:
        self.events.append("start")
        self.collector.append("Starting app...")
        if self.script.exit_before_ready is not None:
            return StartOutcome(source=ReadinessSource.EXITED, exit_code=self.script.exit_before_ready)
        if self.script.ready_delay:
            await asyncio.sleep(self.script.ready_delay)
            return StartOutcome(source=ReadinessSource.GRACE_PERIOD)
        self.collector.append("Compiled successfully")
        return StartOutcome(source=ReadinessSource.MARKER)

    async def wait(self) -> int:
        return await asyncio.shield(self._exit)

    def finish(self, code: int) -> None:
        """Simulate the run step exiting."""
        if not self._exit.done():
            self._exit.set_result(code)

    async def stop(self) -> None:
        self.events.append("stop")
        self.stop_calls += 1
        self.collector.close()
        shutil.rmtree(self.workspace, ignore_errors=True)

    def logs(self, tail: int = 100) -> str:
        return self.collector.tail(tail)

    async def stats(self) -> UsageSample | None:
        return UsageSample(cpu_percent=1.5, memory_bytes=4096)


class FakeUnitFactory:
    """Strategy factory recording every unit it builds."""

    def __init__(self) -> None:
        self.script = UnitScript()
        self.units: dict[str, list[FakeUnit]] = {}

    def __call__(
        self,
        kind: IsolationKind,
        sandbox_id: str,
        workspace: Path,
        port: int,
        limits: ResourceLimits,
        collector: LogCollector,
        settings: Settings,
    ) -> FakeUnit:
        unit = FakeUnit(sandbox_id, workspace, port, limits, collector, settings, self.script)
        unit.kind = kind
        self.units.setdefault(sandbox_id, []).append(unit)
        return unit

    def last(self, sandbox_id: str) -> FakeUnit:
        return self.units[sandbox_id][-1]


async def wait_for_status(registry, sandbox_id: str, status: str, timeout: float = 5.0):
    """Poll a registry until a sandbox reaches ``status``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        view = await registry.status(sandbox_id)
        if view is not None and view.status == status:
            return view
        if loop.time() > deadline:
            current = view.status if view is not None else None
            raise AssertionError(f"{sandbox_id} never reached {status} (last: {current})")
        await asyncio.sleep(0.01)


async def wait_until_gone(registry, sandbox_id: str, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while await registry.status(sandbox_id) is not None:
        if loop.time() > deadline:
            raise AssertionError(f"{sandbox_id} still present after {timeout}s")
        await asyncio.sleep(0.01)
