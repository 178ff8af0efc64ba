"""Shared FastAPI dependencies.

Provides common dependency callables used across route modules.
"""

from fastapi import Request

from appforge.sandbox.registry import SandboxRegistry


def get_registry(request: Request) -> SandboxRegistry:
    """Return the registry created by the application lifespan."""
    return request.app.state.registry
