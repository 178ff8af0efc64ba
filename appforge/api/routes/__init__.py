"""API route registration.

Aggregates all API routers into a single router
for inclusion in the main application.
"""

from fastapi import APIRouter

from appforge.api.routes.apps import router as apps_router
from appforge.api.routes.system import router as system_router

# Main API router
api_router = APIRouter()

# System
api_router.include_router(system_router, tags=["System"])
# Sandbox lifecycle
api_router.include_router(apps_router)

__all__ = ["api_router"]
