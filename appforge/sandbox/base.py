"""Isolation strategy interface and shared helpers.

Both isolation strategies (host process tree, container) expose the same
capability surface so the registry never needs to know which one backs a
sandbox.  The helpers here cover what they have in common: pumping child
output into the collector, the marker-or-grace-period readiness policy, and
best-effort multi-step teardown.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Protocol

from appforge.sandbox.collector import LogCollector
from appforge.sandbox.models import IsolationKind, ReadinessSource, StartOutcome, UsageSample

logger = logging.getLogger(__name__)

TeardownStep = tuple[str, Callable[[], Awaitable[object]]]


class IsolationStrategy(Protocol):
    """Capability interface implemented by every isolation strategy.

    create()  prepare the unit (install dependencies / build image); raises
              SandboxStartError on failure, before anything runs
    start()   launch the unit and return once it is ready or has exited
    wait()    exit code of the unit once it stops
    stop()    best-effort teardown of the handle and the workspace
    logs()    tail of captured output
    stats()   one resource-usage sample, or None if unavailable
    """

    kind: IsolationKind
    endpoint: str | None

    async def create(self) -> None: ...

    async def start(self) -> StartOutcome: ...

    async def wait(self) -> int: ...

    async def stop(self) -> None: ...

    def logs(self, tail: int = 100) -> str: ...

    async def stats(self) -> UsageSample | None: ...


class ReadinessWatch:
    """Tracks whether a run step has signalled readiness.

    Readiness detection is heuristic: generated applications do not print a
    uniform signal, so a marker match, a successful probe, or a grace period
    with the unit still alive all count.
    """

    def __init__(self, markers: Iterable[str]) -> None:
        self._markers = [m.lower() for m in markers if m]
        self._event = asyncio.Event()
        self.source: ReadinessSource | None = None

    @property
    def is_ready(self) -> bool:
        return self._event.is_set()

    def feed(self, line: str) -> None:
        if self._event.is_set():
            return
        lowered = line.lower()
        if any(marker in lowered for marker in self._markers):
            self.mark(ReadinessSource.MARKER)

    def mark(self, source: ReadinessSource) -> None:
        if not self._event.is_set():
            self.source = source
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


async def pump_lines(
    reader: asyncio.StreamReader,
    collector: LogCollector,
    *,
    stream: str,
    watch: ReadinessWatch | None = None,
) -> None:
    """Copy a child's output into the collector line by line."""
    while True:
        try:
            raw = await reader.readline()
        except ValueError:
            # Line longer than the reader limit; the overlong chunk is discarded.
            collector.append("[output line exceeded buffer limit and was dropped]", stream=stream)
            continue
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace")
        collector.append(line, stream=stream)
        if watch is not None:
            watch.feed(line)


async def await_readiness(
    watch: ReadinessWatch,
    exited: asyncio.Future[int],
    grace_seconds: float,
    *,
    probe: Callable[[], Awaitable[bool]] | None = None,
    probe_interval: float = 1.0,
) -> StartOutcome:
    """Wait for a marker/probe, an early exit, or the grace period.

    Returns:
        StartOutcome: MARKER/PROBE when signalled, EXITED with the exit code
        if the unit died first, GRACE_PERIOD if it is still alive afterwards.
    """

    async def _probe_loop() -> None:
        assert probe is not None
        while not watch.is_ready:
            try:
                if await probe():
                    watch.mark(ReadinessSource.PROBE)
                    return
            except Exception as exc:
                logger.debug("Readiness probe failed: %s", exc)
            await asyncio.sleep(probe_interval)

    ready_task = asyncio.ensure_future(watch.wait())
    probe_task = asyncio.ensure_future(_probe_loop()) if probe is not None else None
    try:
        await asyncio.wait(
            {ready_task, exited},
            timeout=grace_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        for task in (ready_task, probe_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    if watch.is_ready:
        return StartOutcome(source=watch.source or ReadinessSource.MARKER)
    if exited.done():
        return StartOutcome(source=ReadinessSource.EXITED, exit_code=exited.result())
    return StartOutcome(source=ReadinessSource.GRACE_PERIOD)


async def run_teardown(sandbox_id: str, steps: Sequence[TeardownStep]) -> list[str]:
    """Run every teardown step, logging failures without short-circuiting.

    Returns:
        Names of the steps that failed
    """
    failed: list[str] = []
    for name, step in steps:
        try:
            await step()
        except Exception as exc:
            failed.append(name)
            logger.warning("Teardown step '%s' failed for sandbox %s: %s", name, sandbox_id, exc)
    if failed:
        logger.info("Teardown of %s finished with %d failed step(s)", sandbox_id, len(failed))
    return failed


async def cancel_task(task: asyncio.Task | None) -> None:
    """Cancel a helper task and wait for it to finish."""
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
