"""Data models for sandbox execution.

Plain pydantic models shared by the validator, the isolation strategies,
the registry and the HTTP layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field

# Bundle content as received from callers: text or raw bytes per relative path.
FileBundle = dict[str, str | bytes]


class IsolationKind(StrEnum):
    """Mechanism used to run a sandbox."""

    PROCESS = "process"
    CONTAINER = "container"


class SandboxState(StrEnum):
    """Lifecycle states.

    starting -> running -> {stopped | error}; starting may also go straight
    to stopped or error when the unit exits or fails before readiness.
    """

    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SandboxState.STOPPED, SandboxState.ERROR)


ALLOWED_TRANSITIONS: dict[SandboxState, frozenset[SandboxState]] = {
    SandboxState.STARTING: frozenset(
        {SandboxState.RUNNING, SandboxState.STOPPED, SandboxState.ERROR}
    ),
    SandboxState.RUNNING: frozenset({SandboxState.STOPPED, SandboxState.ERROR}),
    SandboxState.STOPPED: frozenset(),
    SandboxState.ERROR: frozenset(),
}


class ReadinessSource(StrEnum):
    """How a run step was judged ready (or that it never was)."""

    MARKER = "marker"
    GRACE_PERIOD = "grace_period"
    PROBE = "probe"
    EXITED = "exited"


class StartOutcome(BaseModel):
    """Result of starting a unit: ready, or exited before readiness."""

    source: ReadinessSource
    exit_code: int | None = None

    @property
    def ready(self) -> bool:
        return self.source != ReadinessSource.EXITED


class ResourceLimits(BaseModel):
    """Per-sandbox resource ceilings."""

    memory_mb: int = Field(default=512, ge=64, le=8192, description="Memory ceiling in MB")
    cpu_limit: float = Field(default=0.5, gt=0.0, le=8.0, description="CPU ceiling in cores")
    timeout_seconds: float = Field(
        default=300, gt=0, le=86400, description="Wall-clock execution timeout"
    )


class Violation(BaseModel):
    """A single security-policy violation."""

    rule: str = Field(..., description="dependency | content | structure | size")
    message: str
    path: str | None = None
    dependency: str | None = None
    pattern: str | None = None


class ValidationVerdict(BaseModel):
    """Outcome of validating one execute/update request. Never persisted."""

    violations: list[Violation] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.violations


class UsageSample(BaseModel):
    """One resource-usage reading for a sandbox."""

    cpu_percent: float = 0.0
    memory_bytes: int = 0
    sampled_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SandboxView(BaseModel):
    """Read-only snapshot of a sandbox returned by status queries."""

    id: str
    isolation: IsolationKind
    status: SandboxState
    endpoint: str | None = None
    port: int
    started_at: datetime
    uptime_seconds: float
    limits: ResourceLimits
    reason: str | None = None
    usage: UsageSample | None = None


class UpdateResult(BaseModel):
    """Acknowledgement of a hot update.

    ``restart_required`` is set when the running unit cannot see the new
    files, as with container sandboxes whose image was built from the
    workspace.
    """

    status: str = "updated"
    files_written: int
    endpoint: str | None = None
    restart_required: bool = False
