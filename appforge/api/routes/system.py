"""Engine health and status endpoints.

Endpoints:
- /health  — Lightweight liveness probe (no dependency checks)
- /status  — Sandbox counts per state, isolation mode and uptime
"""

import logging
import time
from datetime import UTC, datetime

from fastapi import APIRouter, Depends

from appforge import __version__
from appforge.api.deps import get_registry
from appforge.api.schemas import HealthResponse, HealthStatus, SystemStatus
from appforge.sandbox.models import IsolationKind
from appforge.sandbox.registry import SandboxRegistry

logger = logging.getLogger(__name__)

router = APIRouter()

# Track application start time for uptime calculation
_start_time: float = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check (Liveness)",
    description="Simple health check for load balancers. Returns 200 if the engine is running.",
)
async def health_check() -> HealthResponse:
    """Basic health check endpoint (liveness probe).

    Does NOT check sandboxes or the container runtime.

    Returns:
        HealthResponse with current status
    """
    return HealthResponse(
        status=HealthStatus.HEALTHY,
        timestamp=datetime.now(UTC),
        version=__version__,
    )


@router.get(
    "/status",
    response_model=SystemStatus,
    summary="Engine Status",
)
async def system_status(registry: SandboxRegistry = Depends(get_registry)) -> SystemStatus:
    """Sandbox counts by state plus engine metadata.

    Reported as degraded when any sandbox is in the error state.
    """
    counts = await registry.counts()
    overall = HealthStatus.DEGRADED if counts.get("error") else HealthStatus.HEALTHY
    return SystemStatus(
        status=overall,
        timestamp=datetime.now(UTC),
        version=__version__,
        environment=registry.settings.environment,
        isolation=IsolationKind(registry.settings.sandbox_isolation),
        sandboxes=counts,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
