"""Sandbox lifecycle endpoints.

Endpoints:
- POST   /execute              — validate, materialize and start a bundle
- GET    /apps                 — list sandboxes
- GET    /apps/{app_id}        — status of one sandbox
- PATCH  /apps/{app_id}        — hot update (rewrite files, no restart)
- DELETE /apps/{app_id}        — stop and reclaim (idempotent)
- GET    /apps/{app_id}/logs   — tail of captured output
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from appforge.api.deps import get_registry
from appforge.api.schemas import (
    AppListResponse,
    AppStatusResponse,
    ExecuteRequest,
    ExecuteResponse,
    LogsResponse,
    UpdateRequest,
    UpdateResponse,
)
from appforge.sandbox.models import SandboxView
from appforge.sandbox.registry import SandboxRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Apps"])


def _to_response(view: SandboxView) -> AppStatusResponse:
    return AppStatusResponse(
        app_id=view.id,
        status=view.status,
        endpoint=view.endpoint,
        isolation=view.isolation,
        port=view.port,
        started_at=view.started_at,
        uptime_seconds=view.uptime_seconds,
        limits=view.limits,
        reason=view.reason,
        usage=view.usage,
    )


@router.post(
    "/execute",
    response_model=ExecuteResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Execute a bundle",
    description="Validate a generated bundle, write it to a fresh workspace and start it.",
)
async def execute_app(
    body: ExecuteRequest,
    registry: SandboxRegistry = Depends(get_registry),
) -> ExecuteResponse:
    """Start a sandbox.

    Policy violations (422), bad paths or limits (400) and id conflicts
    (409) are reported synchronously; later failures show up in status.
    """
    view = await registry.execute(
        body.app_id,
        dict(body.files),
        body.dependencies,
        body.resources,
        isolation=body.isolation,
        redeploy=body.redeploy,
        wait=body.wait,
    )
    return ExecuteResponse(
        app_id=view.id,
        endpoint=view.endpoint,
        status=view.status,
        logs=await registry.logs(view.id),
    )


@router.get(
    "/apps",
    response_model=AppListResponse,
    summary="List sandboxes",
)
async def list_apps(registry: SandboxRegistry = Depends(get_registry)) -> AppListResponse:
    views = await registry.list()
    return AppListResponse(apps=[_to_response(v) for v in views], total=len(views))


@router.get(
    "/apps/{app_id}",
    response_model=AppStatusResponse,
    summary="Sandbox status",
)
async def get_app(
    app_id: str,
    registry: SandboxRegistry = Depends(get_registry),
) -> AppStatusResponse:
    view = await registry.status(app_id)
    if view is None:
        raise HTTPException(status_code=404, detail=f"App {app_id} not found")
    return _to_response(view)


@router.patch(
    "/apps/{app_id}",
    response_model=UpdateResponse,
    summary="Hot update",
    description=(
        "Rewrite files inside a running sandbox. Does not reinstall or restart. "
        "Container sandboxes run the image built at execute time, so the response "
        "sets restart_required and the changes apply on the next redeploy."
    ),
)
async def update_app(
    app_id: str,
    body: UpdateRequest,
    registry: SandboxRegistry = Depends(get_registry),
) -> UpdateResponse:
    result = await registry.update(app_id, dict(body.files))
    if result is None:
        raise HTTPException(status_code=404, detail=f"App {app_id} not found")
    return UpdateResponse(
        status=result.status,
        files_written=result.files_written,
        endpoint=result.endpoint,
        restart_required=result.restart_required,
    )


@router.delete(
    "/apps/{app_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Stop a sandbox",
    description="Stop the sandbox and delete its workspace. Unknown ids are accepted.",
)
async def stop_app(
    app_id: str,
    registry: SandboxRegistry = Depends(get_registry),
) -> Response:
    await registry.stop(app_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/apps/{app_id}/logs",
    response_model=LogsResponse,
    summary="Sandbox logs",
)
async def get_app_logs(
    app_id: str,
    tail: int = Query(default=100, ge=0, description="Number of trailing lines"),
    registry: SandboxRegistry = Depends(get_registry),
) -> LogsResponse:
    """Return the last ``tail`` lines, clamped to the configured maximum."""
    if await registry.status(app_id) is None:
        raise HTTPException(status_code=404, detail=f"App {app_id} not found")
    return LogsResponse(app_id=app_id, logs=await registry.logs(app_id, tail))
