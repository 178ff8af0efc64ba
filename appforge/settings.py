"""Application settings using pydantic-settings.

Loads configuration from environment variables with .env file support.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Environment
    environment: Literal["development", "staging", "production", "testing"] = "development"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_host: str = Field(default="0.0.0.0")  # noqa: S104
    api_port: int = Field(default=8070, ge=1, le=65535)

    # Workspace
    sandbox_workspace_root: Path = Field(
        default=Path("data/sandbox-apps"),
        description="Root directory holding one subdirectory per active sandbox",
        validation_alias=AliasChoices("sandbox_workspace_root", "workspace_dir"),
    )

    # Isolation
    sandbox_isolation: Literal["process", "container"] = Field(
        default="process",
        description="Default isolation strategy for new sandboxes",
    )
    sandbox_allow_process_in_production: bool = Field(
        default=False,
        description="Permit the host-process strategy when environment=production",
    )
    sandbox_base_port: int = Field(
        default=9000,
        ge=1024,
        le=65000,
        description="First port handed out by the per-process port pool",
    )
    sandbox_public_host: str = Field(
        default="localhost",
        description="Host name used when building sandbox endpoints",
    )

    # Default resource limits
    sandbox_memory_mb: int = Field(
        default=512,
        ge=64,
        le=8192,
        description="Memory ceiling per sandbox",
        validation_alias=AliasChoices("sandbox_memory_mb", "max_memory_mb"),
    )
    sandbox_cpu_limit: float = Field(
        default=0.5,
        gt=0.0,
        le=8.0,
        description="CPU ceiling per sandbox, in cores",
    )
    sandbox_timeout_seconds: float = Field(
        default=300,
        gt=0,
        le=86400,
        description="Wall-clock execution timeout per sandbox",
    )

    # Readiness detection
    sandbox_ready_grace_seconds: float = Field(
        default=15.0,
        gt=0,
        le=600,
        description="Seconds after which a live run step counts as ready without a marker",
    )
    sandbox_ready_markers: list[str] = Field(
        default_factory=lambda: [
            "compiled successfully",
            "webpack compiled",
            "started",
            "listening",
            "ready",
        ],
        description="Case-insensitive output fragments that signal readiness",
    )

    # Process strategy
    sandbox_install_command: list[str] = Field(
        default_factory=lambda: [
            "npm",
            "install",
            "--omit=dev",
            "--ignore-scripts",
            "--no-audit",
            "--no-fund",
        ],
        description="Dependency install step (scripts disabled, production deps only)",
    )
    sandbox_start_command: list[str] = Field(
        default_factory=lambda: ["npm", "start", "--ignore-scripts"],
        description="Run step (pre/post hooks disabled)",
    )
    sandbox_env_allowlist: list[str] = Field(
        default_factory=lambda: ["PATH", "HOME", "LANG", "TZ", "TMPDIR"],
        description="Host environment variables passed through to sandbox children",
    )
    sandbox_kill_grace_seconds: float = Field(
        default=3.0,
        ge=0,
        le=60,
        description="Delay between SIGTERM and SIGKILL when stopping a process tree",
    )
    sandbox_enforce_rlimits: bool = Field(
        default=False,
        description="Apply RLIMIT_AS to host processes (breaks runtimes that reserve large heaps)",
    )

    # Bundle limits (shared by validator and materializer)
    sandbox_max_file_bytes: int = Field(default=1024 * 1024, ge=1024)
    sandbox_max_files: int = Field(default=100, ge=1)
    sandbox_max_total_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)
    sandbox_strict_dependencies: bool = Field(
        default=False,
        description="Require every dependency to appear on the allowlist",
    )

    # Logs and metrics
    sandbox_log_buffer_lines: int = Field(default=2000, ge=10, le=100_000)
    sandbox_log_tail_max: int = Field(default=1000, ge=1, le=100_000)
    sandbox_stats_interval_seconds: float = Field(default=5.0, gt=0, le=300)

    # Container strategy
    container_runtime_path: str = Field(
        default="podman",
        description="Path to a podman- or docker-compatible CLI",
    )
    container_base_image: str = Field(default="node:20-alpine")
    container_network: Literal["none", "bridge"] = Field(
        default="none",
        description="Container network; 'none' disables all network access",
    )
    container_user: str = Field(default="1000:1000")
    container_pids_limit: int = Field(default=128, ge=8, le=4096)
    container_tmpfs_mb: int = Field(default=64, ge=8, le=1024)
    container_add_capabilities: list[str] = Field(default_factory=list)
    container_build_timeout_seconds: float = Field(default=600, gt=0)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are loaded once and reused.
    """
    return Settings()
