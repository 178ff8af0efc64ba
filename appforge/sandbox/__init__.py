"""Sandboxed execution of generated application bundles.

A bundle is validated against the security policy, written into its own
workspace, then installed and run under one of two isolation strategies
(host process tree or container).  The registry owns every live sandbox.
"""

from appforge.sandbox.models import (
    IsolationKind,
    ResourceLimits,
    SandboxState,
    SandboxView,
    UpdateResult,
    ValidationVerdict,
    Violation,
)
from appforge.sandbox.registry import SandboxRegistry
from appforge.sandbox.validator import SecurityValidator, ValidationPolicy
from appforge.sandbox.workspace import WorkspaceMaterializer

__all__ = [
    # Models
    "IsolationKind",
    "ResourceLimits",
    "SandboxState",
    "SandboxView",
    "UpdateResult",
    "ValidationVerdict",
    "Violation",
    # Components
    "SandboxRegistry",
    "SecurityValidator",
    "ValidationPolicy",
    "WorkspaceMaterializer",
]
