"""Container security policy.

Translates a sandbox's resource limits and the configured hardening options
into container runtime arguments.  Every container runs with a read-only
root filesystem, no capabilities, no privilege escalation, a process-count
ceiling and, unless explicitly configured otherwise, no network.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from appforge.sandbox.models import ResourceLimits
from appforge.settings import Settings

# CFS scheduling period used to express fractional CPU limits.
CPU_PERIOD_US = 100_000
# Label attached to every sandbox container, for operators and cleanup.
SANDBOX_LABEL = "appforge.sandbox"


class NetworkPolicy(StrEnum):
    """Container network access."""

    NONE = "none"  # No network at all (default)
    BRIDGE = "bridge"  # Runtime default network, app port published


class ContainerPolicy(BaseModel):
    """Complete security policy for one sandbox container."""

    sandbox_id: str = Field(..., description="Owning sandbox")
    port: int = Field(..., ge=1, le=65535, description="Port the app listens on")
    limits: ResourceLimits = Field(default_factory=ResourceLimits)

    # Network
    network: NetworkPolicy = Field(default=NetworkPolicy.NONE)
    publish_host: str = Field(default="127.0.0.1", description="Host interface for -p")

    # Filesystem
    read_only_root: bool = Field(default=True)
    tmpfs_mb: int = Field(default=64, ge=8, le=1024, description="Size of /tmp")

    # Process
    user: str = Field(default="1000:1000")
    pids_limit: int = Field(default=128, ge=8, le=4096)

    # Capabilities
    drop_all_caps: bool = Field(default=True)
    add_capabilities: list[str] = Field(default_factory=list)
    no_new_privileges: bool = Field(default=True)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        sandbox_id: str,
        port: int,
        limits: ResourceLimits,
    ) -> ContainerPolicy:
        return cls(
            sandbox_id=sandbox_id,
            port=port,
            limits=limits,
            network=NetworkPolicy(settings.container_network),
            user=settings.container_user,
            pids_limit=settings.container_pids_limit,
            tmpfs_mb=settings.container_tmpfs_mb,
            add_capabilities=list(settings.container_add_capabilities),
        )

    @property
    def cpu_quota(self) -> int:
        return max(1000, int(self.limits.cpu_limit * CPU_PERIOD_US))

    @property
    def has_network(self) -> bool:
        return self.network != NetworkPolicy.NONE

    def to_podman_args(self) -> list[str]:
        """Convert policy to container CLI arguments for ``create``.

        Returns:
            List of CLI arguments
        """
        args: list[str] = [
            "--label",
            f"{SANDBOX_LABEL}={self.sandbox_id}",
            "--memory",
            f"{self.limits.memory_mb}m",
            "--memory-swap",
            f"{self.limits.memory_mb}m",
            "--cpu-period",
            str(CPU_PERIOD_US),
            "--cpu-quota",
            str(self.cpu_quota),
            "--pids-limit",
            str(self.pids_limit),
        ]

        # Network
        if self.has_network:
            args.extend(["--network", self.network.value])
            args.extend(["-p", f"{self.publish_host}:{self.port}:{self.port}"])
        else:
            args.append("--network=none")

        # Filesystem
        if self.read_only_root:
            args.append("--read-only")
        args.extend(["--tmpfs", f"/tmp:size={self.tmpfs_mb}m,mode=1777"])  # nosec B108

        # User
        args.extend(["--user", self.user])

        # Security
        if self.drop_all_caps:
            args.append("--cap-drop=ALL")
        for capability in self.add_capabilities:
            args.append(f"--cap-add={capability}")
        if self.no_new_privileges:
            args.append("--security-opt=no-new-privileges")

        # Environment; npm needs a writable HOME and cache under the read-only root.
        args.extend(["--env", "HOME=/tmp"])
        args.extend(["--env", "NPM_CONFIG_CACHE=/tmp/.npm"])
        args.extend(["--env", "NODE_ENV=production"])
        args.extend(["--env", f"PORT={self.port}"])

        return args

    def to_dict(self) -> dict[str, Any]:
        """Convert policy to dictionary for logging."""
        return self.model_dump(mode="json")


__all__ = [
    "CPU_PERIOD_US",
    "SANDBOX_LABEL",
    "ContainerPolicy",
    "NetworkPolicy",
]
