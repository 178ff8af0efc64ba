"""Static security gate for generated bundles.

Runs before anything touches disk.  Applies four rule groups in order
(dependency, content, structure, size) and reports every violation found
rather than stopping at the first one, so callers can show them all at once.

The validator is pure: no filesystem access, no logging, no state.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from pathlib import PurePosixPath

from pydantic import BaseModel, Field

from appforge.sandbox.models import FileBundle, ValidationVerdict, Violation
from appforge.settings import Settings

# Reserved inside every workspace for the append-only sandbox log.
LOG_FILENAME = ".appforge.log"

# =============================================================================
# DEFAULT RULE TABLES
# =============================================================================

# Packages granting process spawning, raw filesystem/network access, or
# dynamic code loading.  Matched with re.search against the package name.
DEFAULT_DENIED_DEPENDENCIES: tuple[str, ...] = (
    r"child[-_]?process",
    r"^(@[^/]+/)?shelljs$",
    r"^(@[^/]+/)?execa$",
    r"^cross-spawn$",
    r"^node-pty$",
    r"^fs(-extra)?$",
    r"^graceful-fs$",
    r"^rimraf$",
    r"^net$",
    r"^dgram$",
    r"^raw-socket$",
    r"^ffi(-napi)?$",
    r"^node-gyp$",
    r"^vm2$",
    r"^isolated-vm$",
    r"^eval$",
    r"^require-from-string$",
)

DEFAULT_ALLOWED_DEPENDENCIES: frozenset[str] = frozenset(
    {
        "react",
        "react-dom",
        "react-scripts",
        "next",
        "typescript",
        "tailwindcss",
        "lucide-react",
        "class-variance-authority",
        "clsx",
        "tailwind-merge",
        "date-fns",
        "papaparse",
        "jspdf",
        "html2canvas",
        "express",
        "serve",
    }
)

# (name, regex) pairs applied to every file's text.
DEFAULT_CONTENT_PATTERNS: tuple[tuple[str, str], ...] = (
    ("eval", r"(?<![\w.$])eval\s*\("),
    ("function-constructor", r"(?<![\w.$])(?:new\s+)?Function\s*\("),
    (
        "require-system-module",
        r"require\s*\(\s*['\"`](?:node:)?(?:fs|fs/promises|child_process|os|cluster|"
        r"worker_threads|vm|net|dgram|process)['\"`]\s*\)",
    ),
    (
        "import-system-module",
        r"import\s+[^;]*?\s+from\s+['\"`](?:node:)?(?:fs|fs/promises|child_process|os|"
        r"cluster|worker_threads|vm|net|dgram|process)['\"`]",
    ),
    (
        "dynamic-import-system-module",
        r"import\s*\(\s*['\"`](?:node:)?(?:fs|fs/promises|child_process|os|vm|net)['\"`]\s*\)",
    ),
    ("process-binding", r"process\s*\.\s*(?:binding|dlopen)\s*\("),
    ("document-write", r"document\s*\.\s*write(?:ln)?\s*\("),
    ("inner-html-assignment", r"\.\s*innerHTML\s*=(?!=)"),
    ("outer-html-assignment", r"\.\s*outerHTML\s*=(?!=)"),
)

DEFAULT_DISALLOWED_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".exe",
        ".sh",
        ".bash",
        ".zsh",
        ".bat",
        ".cmd",
        ".ps1",
        ".com",
        ".msi",
        ".dll",
        ".so",
        ".dylib",
        ".bin",
    }
)

# Manifest fields whose packages npm installs.
MANIFEST_DEPENDENCY_SECTIONS: tuple[str, ...] = (
    "dependencies",
    "devDependencies",
    "optionalDependencies",
    "peerDependencies",
)

DEFAULT_ENTRY_CANDIDATES: tuple[str, ...] = (
    "index.js",
    "index.tsx",
    "server.js",
    "app.js",
    "src/index.js",
    "src/index.tsx",
    "pages/index.tsx",
    "index.html",
)

_NPM_NAME = re.compile(r"^(@[a-z0-9][a-z0-9._~-]*/)?[a-z0-9][a-z0-9._~-]*$")
_VERSION = re.compile(r"^(?:\*|[\^~]?[A-Za-z0-9][A-Za-z0-9.\-]*)$")
_IMPORT_SPECIFIER = re.compile(
    r"""(?:\bfrom\s+|\brequire\s*\(\s*|\bimport\s*\(\s*)['"`]([^'"`]+)['"`]"""
)
_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:")


# =============================================================================
# POLICY
# =============================================================================


class ValidationPolicy(BaseModel):
    """Rule configuration for the validator.

    All fields have safe defaults.  ``max_file_bytes``, ``max_files`` and
    ``max_total_bytes`` must match the materializer's limits; build both from
    the same Settings via :meth:`from_settings`.
    """

    denied_dependencies: tuple[str, ...] = DEFAULT_DENIED_DEPENDENCIES
    allowed_dependencies: frozenset[str] = DEFAULT_ALLOWED_DEPENDENCIES
    strict_dependencies: bool = False
    content_patterns: tuple[tuple[str, str], ...] = DEFAULT_CONTENT_PATTERNS
    disallowed_extensions: frozenset[str] = DEFAULT_DISALLOWED_EXTENSIONS
    manifest_filename: str = "package.json"
    entry_candidates: tuple[str, ...] = DEFAULT_ENTRY_CANDIDATES
    max_file_bytes: int = Field(default=1024 * 1024, ge=1)
    max_files: int = Field(default=100, ge=1)
    max_total_bytes: int = Field(default=10 * 1024 * 1024, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> ValidationPolicy:
        return cls(
            strict_dependencies=settings.sandbox_strict_dependencies,
            max_file_bytes=settings.sandbox_max_file_bytes,
            max_files=settings.sandbox_max_files,
            max_total_bytes=settings.sandbox_max_total_bytes,
        )


def _as_bytes(content: str | bytes) -> bytes:
    return content if isinstance(content, bytes) else content.encode("utf-8")


def _as_text(content: str | bytes) -> str:
    return content if isinstance(content, str) else content.decode("utf-8", errors="replace")


def _package_name(specifier: str) -> str:
    parts = specifier.split("/")
    if specifier.startswith("@") and len(parts) > 1:
        return "/".join(parts[:2])
    return parts[0]


def path_problem(path: str) -> str | None:
    """Return why a bundle path is unsafe, or None if it is acceptable.

    Shared with the materializer, which re-checks every path against the
    resolved workspace root as well.
    """
    if not path or not path.strip():
        return "empty path"
    if "\x00" in path:
        return "null byte in path"
    if path.startswith(("/", "\\")) or _WINDOWS_DRIVE.match(path):
        return "absolute path"
    segments = re.split(r"[\\/]+", path)
    if ".." in segments:
        return "parent-directory segment"
    if PurePosixPath(path.replace("\\", "/")).name == LOG_FILENAME:
        return "reserved file name"
    return None


class SecurityValidator:
    """Policy gate over declared dependencies and bundle files.

    Usage:
        validator = SecurityValidator(ValidationPolicy.from_settings(settings))
        verdict = validator.validate(files, dependencies)
        if not verdict.passed:
            raise PolicyViolationError(verdict)
    """

    def __init__(self, policy: ValidationPolicy | None = None) -> None:
        self.policy = policy or ValidationPolicy()
        self._denied = [re.compile(p) for p in self.policy.denied_dependencies]
        self._patterns = [(name, re.compile(rx)) for name, rx in self.policy.content_patterns]

    def validate(
        self,
        files: FileBundle,
        dependencies: Mapping[str, str] | None = None,
        *,
        partial: bool = False,
    ) -> ValidationVerdict:
        """Validate a bundle.

        Args:
            files: Relative path -> content
            dependencies: Package name -> version spec.  Dependency sections of
                the bundled manifest are held to the same rules.
            partial: Skip the manifest/entry-point presence check (hot updates)

        Returns:
            ValidationVerdict listing every violation
        """
        dependencies = dict(dependencies or {})
        sections, manifest_violations = self.manifest_dependencies(files)
        declared = dict(dependencies)
        violations: list[Violation] = []
        violations.extend(self.check_dependencies(dependencies))
        for section in sections.values():
            # Entries repeated verbatim from the explicit map were checked above.
            extra = {name: v for name, v in section.items() if dependencies.get(name) != v}
            violations.extend(
                self.check_dependencies(extra, source=self.policy.manifest_filename)
            )
            declared.update({name: v for name, v in section.items() if isinstance(v, str)})
        violations.extend(self.check_content(files, declared))
        violations.extend(manifest_violations)
        violations.extend(self.check_structure(files, partial=partial))
        violations.extend(self.check_size(files))
        return ValidationVerdict(violations=violations)

    # -------------------------------------------------------------------------
    # Rule groups
    # -------------------------------------------------------------------------

    def check_dependencies(
        self, dependencies: Mapping[str, object], *, source: str | None = None
    ) -> list[Violation]:
        violations: list[Violation] = []
        for name, version in dependencies.items():
            denied = next((rx for rx in self._denied if rx.search(name)), None)
            if denied is not None:
                violations.append(
                    Violation(
                        rule="dependency",
                        message=f"Package '{name}' is not allowed",
                        dependency=name,
                        path=source,
                        pattern=denied.pattern,
                    )
                )
                continue
            if not _NPM_NAME.match(name):
                violations.append(
                    Violation(
                        rule="dependency",
                        message=f"Invalid package name '{name}'",
                        dependency=name,
                        path=source,
                    )
                )
                continue
            if not isinstance(version, str) or not _VERSION.match(version):
                violations.append(
                    Violation(
                        rule="dependency",
                        message=f"Invalid version format for package '{name}': {version!r}",
                        dependency=name,
                        path=source,
                    )
                )
                continue
            if (
                self.policy.strict_dependencies
                and name not in self.policy.allowed_dependencies
            ):
                violations.append(
                    Violation(
                        rule="dependency",
                        message=f"Package '{name}' is not on the allowlist",
                        dependency=name,
                        path=source,
                    )
                )
        return violations

    def check_content(
        self,
        files: FileBundle,
        dependencies: Mapping[str, str] | None = None,
    ) -> list[Violation]:
        violations: list[Violation] = []
        declared = set(dependencies or {})
        for path, content in files.items():
            text = _as_text(content)
            for name, rx in self._patterns:
                if rx.search(text):
                    violations.append(
                        Violation(
                            rule="content",
                            message=f"Blocked pattern '{name}' detected in file '{path}'",
                            path=path,
                            pattern=rx.pattern,
                        )
                    )
            if self.policy.strict_dependencies:
                violations.extend(self._suspicious_imports(path, text, declared))
        return violations

    def _suspicious_imports(self, path: str, text: str, declared: set[str]) -> list[Violation]:
        violations: list[Violation] = []
        seen: set[str] = set()
        for match in _IMPORT_SPECIFIER.finditer(text):
            specifier = match.group(1)
            if specifier.startswith((".", "/")):
                continue
            package = _package_name(specifier)
            if package in seen:
                continue
            seen.add(package)
            if package not in self.policy.allowed_dependencies and package not in declared:
                violations.append(
                    Violation(
                        rule="content",
                        message=f"Suspicious import detected in file '{path}': {package}",
                        path=path,
                        dependency=package,
                    )
                )
        return violations

    def check_structure(self, files: FileBundle, *, partial: bool = False) -> list[Violation]:
        violations: list[Violation] = []
        for path in files:
            problem = path_problem(path)
            if problem:
                violations.append(
                    Violation(
                        rule="structure",
                        message=f"Invalid file path '{path}': {problem}",
                        path=path,
                    )
                )
                continue
            suffix = PurePosixPath(path.replace("\\", "/")).suffix.lower()
            if suffix in self.policy.disallowed_extensions:
                violations.append(
                    Violation(
                        rule="structure",
                        message=f"Executable files not allowed: {path}",
                        path=path,
                    )
                )

        if partial:
            return violations

        manifest = self.policy.manifest_filename
        if manifest not in files:
            violations.append(
                Violation(rule="structure", message=f"Missing {manifest} file", path=manifest)
            )
            return violations

        entry = self.declared_entry_point(files)
        if entry is not None:
            if entry not in files:
                violations.append(
                    Violation(
                        rule="structure",
                        message=f"Declared entry point '{entry}' is missing",
                        path=entry,
                    )
                )
        elif not any(candidate in files for candidate in self.policy.entry_candidates):
            violations.append(Violation(rule="structure", message="Missing entry point file"))
        return violations

    def check_size(self, files: FileBundle) -> list[Violation]:
        violations: list[Violation] = []
        if len(files) > self.policy.max_files:
            violations.append(
                Violation(
                    rule="size",
                    message=f"Bundle has {len(files)} files; limit is {self.policy.max_files}",
                )
            )
        total = 0
        for path, content in files.items():
            size = len(_as_bytes(content))
            total += size
            if size > self.policy.max_file_bytes:
                violations.append(
                    Violation(
                        rule="size",
                        message=f"File '{path}' exceeds maximum size limit ({size} bytes)",
                        path=path,
                    )
                )
        if total > self.policy.max_total_bytes:
            violations.append(
                Violation(
                    rule="size",
                    message=f"Bundle is {total} bytes; limit is {self.policy.max_total_bytes}",
                )
            )
        return violations

    def manifest_dependencies(
        self, files: FileBundle
    ) -> tuple[dict[str, dict[str, object]], list[Violation]]:
        """Dependency sections declared by the bundled manifest.

        ``npm install`` installs these whether or not they were also passed
        separately, so they go through the same dependency rules.

        Returns:
            (section name -> {package: version}, structure violations for
            sections that are not JSON objects)
        """
        manifest = self._load_manifest(files)
        if manifest is None:
            return {}, []
        sections: dict[str, dict[str, object]] = {}
        violations: list[Violation] = []
        for section in MANIFEST_DEPENDENCY_SECTIONS:
            value = manifest.get(section)
            if value is None:
                continue
            if not isinstance(value, dict):
                violations.append(
                    Violation(
                        rule="structure",
                        message=f"'{section}' in {self.policy.manifest_filename} must be an object",
                        path=self.policy.manifest_filename,
                    )
                )
                continue
            sections[section] = {str(name): version for name, version in value.items()}
        return sections, violations

    def declared_entry_point(self, files: FileBundle) -> str | None:
        """Entry point named by the manifest's ``main`` field, if any."""
        manifest = self._load_manifest(files)
        if manifest is None:
            return None
        main = manifest.get("main")
        if not isinstance(main, str) or not main.strip():
            return None
        return main.strip().removeprefix("./")

    def _load_manifest(self, files: FileBundle) -> dict | None:
        raw = files.get(self.policy.manifest_filename)
        if raw is None:
            return None
        try:
            manifest = json.loads(_as_text(raw))
        except ValueError:
            return None
        return manifest if isinstance(manifest, dict) else None
