"""Request and response schemas for the HTTP API."""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from appforge.sandbox.models import (
    IsolationKind,
    ResourceLimits,
    SandboxState,
    UsageSample,
)


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthResponse(BaseModel):
    """Health check response."""

    status: HealthStatus = Field(..., description="Overall engine health")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Health check timestamp",
    )
    version: str = Field(default="0.1.0", description="Application version")


class SystemStatus(BaseModel):
    """Detailed engine status response."""

    status: HealthStatus = Field(..., description="Overall engine health")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    version: str = Field(default="0.1.0")
    environment: str = Field(..., description="Current environment")
    isolation: IsolationKind = Field(..., description="Default isolation strategy")
    sandboxes: dict[str, int] = Field(
        default_factory=dict,
        description="Number of sandboxes per lifecycle state",
    )
    uptime_seconds: float | None = Field(default=None)


class ExecuteRequest(BaseModel):
    """Bundle to validate, materialize and run."""

    app_id: str = Field(..., min_length=1, max_length=128, description="Sandbox identifier")
    files: dict[str, str] = Field(..., description="Relative path -> file content")
    dependencies: dict[str, str] = Field(default_factory=dict)
    resources: ResourceLimits | None = Field(
        default=None, description="Resource limits (defaults from configuration)"
    )
    isolation: IsolationKind | None = Field(default=None)
    redeploy: bool = Field(default=False, description="Replace a live sandbox with the same id")
    wait: bool = Field(default=False, description="Return only once running or terminal")


class ExecuteResponse(BaseModel):
    app_id: str
    endpoint: str | None = None
    status: SandboxState
    logs: str = ""


class UpdateRequest(BaseModel):
    """Files to rewrite in place."""

    files: dict[str, str] = Field(..., min_length=1)


class UpdateResponse(BaseModel):
    status: str = "updated"
    files_written: int
    endpoint: str | None = None
    restart_required: bool = Field(
        default=False,
        description="True when the changes only take effect after a redeploy",
    )


class AppStatusResponse(BaseModel):
    """Status of one sandbox."""

    app_id: str
    status: SandboxState
    endpoint: str | None = None
    isolation: IsolationKind
    port: int
    started_at: datetime
    uptime_seconds: float
    limits: ResourceLimits
    reason: str | None = None
    usage: UsageSample | None = None


class AppListResponse(BaseModel):
    apps: list[AppStatusResponse] = Field(default_factory=list)
    total: int = 0


class LogsResponse(BaseModel):
    app_id: str
    logs: str
