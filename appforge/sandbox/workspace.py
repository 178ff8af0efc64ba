"""Workspace materialization.

Writes a file bundle into ``<base_dir>/<sandbox_id>`` without letting any
path escape that directory.  Every file is resolved against the canonical
workspace root and re-checked after its parent directories exist, so a
symlink planted earlier in the same bundle cannot redirect a later write.

A fresh bundle is written into a hidden staging directory first and only
renamed into place once every file has been written, so a failed attempt
leaves the workspace tree exactly as it was.  Staging and placement are
separate steps so the registry can confirm it still owns the id before the
rename.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field

from appforge.exceptions import MaterializationError, PathViolationError, WorkspaceLimitError
from appforge.sandbox.models import FileBundle
from appforge.sandbox.validator import path_problem
from appforge.settings import Settings

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".staging-"

_SANDBOX_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_O_NOFOLLOW = getattr(os, "O_NOFOLLOW", 0)


class WorkspaceLimits(BaseModel):
    """Bounds on what one workspace may hold.

    Must agree with the validator's ``ValidationPolicy``; build both from
    the same Settings.
    """

    max_file_bytes: int = Field(default=1024 * 1024, ge=1)
    max_files: int = Field(default=100, ge=1)
    max_total_bytes: int = Field(default=10 * 1024 * 1024, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkspaceLimits:
        return cls(
            max_file_bytes=settings.sandbox_max_file_bytes,
            max_files=settings.sandbox_max_files,
            max_total_bytes=settings.sandbox_max_total_bytes,
        )


def _encode(content: str | bytes) -> bytes:
    return content if isinstance(content, bytes) else content.encode("utf-8")


def check_sandbox_id(sandbox_id: str) -> None:
    """Reject ids that cannot safely name a single directory."""
    if not isinstance(sandbox_id, str) or not _SANDBOX_ID.match(sandbox_id):
        raise PathViolationError(str(sandbox_id), "invalid sandbox id")


def _ensure_inside(root: Path, resolved: Path, relative_path: str) -> None:
    if root not in resolved.parents:
        raise PathViolationError(relative_path)


class WorkspaceMaterializer:
    """Creates, updates and removes sandbox workspaces under one base directory.

    Usage:
        materializer = WorkspaceMaterializer(Path("/var/lib/appforge"))
        workspace = materializer.materialize("app-1", {"package.json": "{}"})
    """

    def __init__(self, base_dir: Path, limits: WorkspaceLimits | None = None) -> None:
        self.base_dir = Path(base_dir)
        self.limits = limits or WorkspaceLimits()
        # Bytes written per file, per sandbox, by this materializer.
        self._written: dict[str, dict[str, int]] = {}
        self._staged: dict[Path, tuple[str, dict[str, int]]] = {}

    def ensure_base_dir(self) -> Path:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        return self.base_dir.resolve()

    def workspace_path(self, sandbox_id: str) -> Path:
        check_sandbox_id(sandbox_id)
        return self.ensure_base_dir() / sandbox_id

    def materialize(self, sandbox_id: str, files: FileBundle) -> Path:
        """Write a complete bundle, replacing any previous workspace for the id.

        Equivalent to ``place(sandbox_id, stage(sandbox_id, files))``.

        Args:
            sandbox_id: Owner of the workspace
            files: Relative path -> content

        Returns:
            Canonical workspace path

        Raises:
            PathViolationError: A path escapes the workspace
            WorkspaceLimitError: The bundle exceeds count or size bounds
        """
        return self.place(sandbox_id, self.stage(sandbox_id, files))

    def stage(self, sandbox_id: str, files: FileBundle) -> Path:
        """Write a bundle into a fresh staging directory beside the workspace.

        Nothing under ``<base_dir>/<sandbox_id>`` is touched; the caller
        decides whether to ``place`` or ``discard`` the result.
        """
        target = self.workspace_path(sandbox_id)
        sizes = {path: len(_encode(content)) for path, content in files.items()}
        self._check_limits(sizes)

        staging = Path(
            tempfile.mkdtemp(prefix=f"{STAGING_PREFIX}{sandbox_id}-", dir=target.parent)
        )
        try:
            staging.chmod(0o755)
            staging_root = staging.resolve()
            for relative_path, content in files.items():
                self._write_file(staging_root, relative_path, _encode(content))
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        self._staged[staging] = (sandbox_id, sizes)
        return staging

    def place(self, sandbox_id: str, staging: Path) -> Path:
        """Swap a staged bundle into ``<base_dir>/<sandbox_id>``."""
        target = self.workspace_path(sandbox_id)
        owner, sizes = self._staged.get(staging, (None, {}))
        if owner != sandbox_id:
            raise MaterializationError(f"No staged bundle for {sandbox_id} at {staging}")
        del self._staged[staging]

        self._remove_path(target)
        try:
            staging.rename(target)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise MaterializationError(f"Could not place workspace for {sandbox_id}: {exc}") from exc

        self._written[sandbox_id] = sizes
        logger.debug("Materialized %d files into %s", len(sizes), target)
        return target

    def discard(self, staging: Path) -> None:
        """Drop a staged bundle that will never be placed."""
        self._staged.pop(staging, None)
        shutil.rmtree(staging, ignore_errors=True)

    def update(self, sandbox_id: str, files: FileBundle) -> int:
        """Rewrite files inside an existing workspace (hot update).

        Every path is checked before the first write.  Count and size bounds
        apply to the union of previously written and new files.

        Returns:
            Number of files written
        """
        target = self.workspace_path(sandbox_id)
        if sandbox_id not in self._written or not target.is_dir():
            raise MaterializationError(f"No workspace for sandbox {sandbox_id}")

        root = target.resolve()
        sizes = {path: len(_encode(content)) for path, content in files.items()}
        merged = {**self._written[sandbox_id], **sizes}
        self._check_limits(sizes, merged)
        for relative_path in files:
            self._resolve(root, relative_path)

        for relative_path, content in files.items():
            self._write_file(root, relative_path, _encode(content))
        self._written[sandbox_id] = merged
        return len(files)

    def remove(self, sandbox_id: str) -> None:
        """Delete a workspace and forget what was written to it."""
        target = self.workspace_path(sandbox_id)
        self._remove_path(target)
        self.forget(sandbox_id)

    def forget(self, sandbox_id: str) -> None:
        self._written.pop(sandbox_id, None)

    def sweep_staging(self) -> int:
        """Remove staging directories left behind by an interrupted run."""
        root = self.ensure_base_dir()
        removed = 0
        for entry in root.iterdir():
            if entry.name.startswith(STAGING_PREFIX) and entry.is_dir():
                shutil.rmtree(entry, ignore_errors=True)
                removed += 1
        if removed:
            logger.info("Removed %d stale staging directories from %s", removed, root)
        return removed

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _check_limits(self, sizes: dict[str, int], merged: dict[str, int] | None = None) -> None:
        for path, size in sizes.items():
            if size > self.limits.max_file_bytes:
                raise WorkspaceLimitError(
                    f"File '{path}' is {size} bytes; limit is {self.limits.max_file_bytes}"
                )
        totals = merged if merged is not None else sizes
        if len(totals) > self.limits.max_files:
            raise WorkspaceLimitError(
                f"Workspace would hold {len(totals)} files; limit is {self.limits.max_files}"
            )
        total_bytes = sum(totals.values())
        if total_bytes > self.limits.max_total_bytes:
            raise WorkspaceLimitError(
                f"Workspace would hold {total_bytes} bytes; limit is {self.limits.max_total_bytes}"
            )

    def _resolve(self, root: Path, relative_path: str) -> Path:
        problem = path_problem(relative_path)
        if problem:
            raise PathViolationError(relative_path, problem)
        resolved = (root / relative_path).resolve()
        _ensure_inside(root, resolved, relative_path)
        return resolved

    def _write_file(self, root: Path, relative_path: str, data: bytes) -> None:
        resolved = self._resolve(root, relative_path)
        resolved.parent.mkdir(parents=True, exist_ok=True)

        # Parents now exist; resolve again in case one of them is a symlink.
        parent = resolved.parent.resolve()
        final = parent / resolved.name
        _ensure_inside(root, final, relative_path)

        try:
            fd = os.open(final, os.O_WRONLY | os.O_CREAT | os.O_TRUNC | _O_NOFOLLOW, 0o644)
        except OSError as exc:
            raise PathViolationError(relative_path, f"cannot write ({exc.strerror})") from exc
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)

    @staticmethod
    def _remove_path(path: Path) -> None:
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.exists():
            shutil.rmtree(path)
