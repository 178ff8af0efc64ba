"""Per-sandbox log capture and resource-usage sampling.

Lines are redacted, kept in a bounded ring buffer for status queries, and
mirrored to an append-only log file inside the workspace.  The file sink is
best-effort: if it fails it is switched off and the in-memory buffer keeps
working.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from appforge.sandbox.models import UsageSample

logger = logging.getLogger(__name__)

_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(password)([=:])\s*\S+", re.IGNORECASE), r"\1\2***"),
    (re.compile(r"(token)([=:])\s*\S+", re.IGNORECASE), r"\1\2***"),
    (re.compile(r"(secret)([=:])\s*\S+", re.IGNORECASE), r"\1\2***"),
    (re.compile(r"(key)([=:])\s*\S+", re.IGNORECASE), r"\1\2***"),
)

# Samples kept per sandbox for the status API.
USAGE_HISTORY = 60


def redact(line: str) -> str:
    """Mask credential-looking values in sandbox output."""
    for pattern, replacement in _SECRET_PATTERNS:
        line = pattern.sub(replacement, line)
    return line


class LogCollector:
    """Bounded, append-only log and usage record for one sandbox."""

    def __init__(
        self,
        sandbox_id: str,
        log_path: Path | None = None,
        max_lines: int = 2000,
    ) -> None:
        self.sandbox_id = sandbox_id
        self.log_path = log_path
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._usage: deque[UsageSample] = deque(maxlen=USAGE_HISTORY)
        self._sink: IO[str] | None = None
        self._closed = False
        if log_path is not None:
            self._open_sink(log_path)

    def _open_sink(self, path: Path) -> None:
        try:
            self._sink = path.open("a", encoding="utf-8", buffering=1)
        except OSError as exc:
            logger.warning("Log file unavailable for sandbox %s: %s", self.sandbox_id, exc)
            self._sink = None

    def append(self, text: str, *, stream: str = "system") -> None:
        """Record output.  Multi-line chunks are split; blank lines dropped."""
        if self._closed:
            return
        for raw in text.splitlines():
            line = redact(raw.rstrip())
            if not line:
                continue
            self._lines.append(line)
            if self._sink is not None:
                stamp = datetime.now(UTC).isoformat(timespec="milliseconds")
                try:
                    self._sink.write(f"[{stamp}] [{stream}] {line}\n")
                except (OSError, ValueError) as exc:
                    logger.warning(
                        "Disabling log file for sandbox %s: %s", self.sandbox_id, exc
                    )
                    self._close_sink()

    def tail(self, lines: int = 100) -> str:
        if lines <= 0:
            return ""
        buffered = list(self._lines)
        return "\n".join(buffered[-lines:])

    def count(self, fragment: str) -> int:
        """Number of buffered lines containing ``fragment``."""
        return sum(1 for line in self._lines if fragment in line)

    def record_usage(self, sample: UsageSample) -> None:
        self._usage.append(sample)

    @property
    def latest_usage(self) -> UsageSample | None:
        return self._usage[-1] if self._usage else None

    def usage_history(self) -> list[UsageSample]:
        return list(self._usage)

    def close(self) -> None:
        """Stop writing to the file sink.  The buffer stays readable."""
        self._close_sink()
        self._closed = True

    def _close_sink(self) -> None:
        if self._sink is None:
            return
        try:
            self._sink.close()
        except OSError as exc:
            logger.debug("Error closing log file for %s: %s", self.sandbox_id, exc)
        self._sink = None
