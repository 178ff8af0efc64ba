"""AppForge exception hierarchy.

Base exceptions for all engine layers with correlation ID support.

Usage:
    from appforge.exceptions import PolicyViolationError, SandboxError

    try:
        await registry.execute(app_id, files)
    except PolicyViolationError as e:
        for violation in e.violations:
            ...
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from appforge.sandbox.models import ValidationVerdict, Violation


class AppForgeError(Exception):
    """Base exception for all AppForge errors.

    Carries a correlation_id for tracing errors across layers.
    """

    def __init__(self, message: str, *, correlation_id: str | None = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        super().__init__(message)


class PolicyViolationError(AppForgeError):
    """A bundle failed the security policy. Carries every violation found."""

    def __init__(self, verdict: ValidationVerdict, **kwargs):
        self.verdict = verdict
        count = len(verdict.violations)
        summary = "; ".join(v.message for v in verdict.violations[:3])
        if count > 3:
            summary += f" (+{count - 3} more)"
        super().__init__(f"Security policy rejected bundle: {summary}", **kwargs)

    @property
    def violations(self) -> list[Violation]:
        return list(self.verdict.violations)


class MaterializationError(AppForgeError):
    """Errors writing a bundle into a workspace."""

    pass


class PathViolationError(MaterializationError):
    """A bundle path resolves outside its workspace."""

    def __init__(self, relative_path: str, reason: str = "escapes workspace", **kwargs):
        self.relative_path = relative_path
        super().__init__(f"Invalid file path {relative_path!r}: {reason}", **kwargs)


class WorkspaceLimitError(MaterializationError):
    """A bundle exceeds the file-count or byte-size bounds."""

    pass


class SandboxError(AppForgeError):
    """Errors from sandbox lifecycle operations."""

    def __init__(
        self,
        message: str,
        *,
        sandbox_id: str | None = None,
        timeout: bool = False,
        **kwargs,
    ):
        self.sandbox_id = sandbox_id
        self.timeout = timeout
        super().__init__(message, **kwargs)


class SandboxStartError(SandboxError):
    """Install, build, or spawn step failed."""

    pass


class SandboxConflictError(SandboxError):
    """A live sandbox already owns the requested id."""

    pass


class SandboxNotFoundError(SandboxError):
    """No sandbox with the requested id."""

    pass


class ConfigurationError(AppForgeError):
    """Errors from application configuration."""

    pass
