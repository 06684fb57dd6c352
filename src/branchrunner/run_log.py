"""Append-only, timestamped per-run log files (build, runtime, network)."""

from __future__ import annotations

import datetime as dt
import logging
import re
from pathlib import Path

from branchrunner.file_io import append_text

logger = logging.getLogger(__name__)

_UNSAFE_SEGMENT = re.compile(r"[\\/]+")


def safe_segment(value: str) -> str:
    """Make a repo name or branch usable as a single path segment."""
    return _UNSAFE_SEGMENT.sub("_", str(value or "").strip()) or "_"


def run_logs_dir(logs_root: Path, repo_full_name: str, branch: str, run_id: str) -> Path:
    return logs_root / safe_segment(repo_full_name) / safe_segment(branch) / run_id


def screenshots_dir(screenshots_root: Path, repo_full_name: str, branch: str) -> Path:
    return screenshots_root / safe_segment(repo_full_name) / safe_segment(branch)


class RunLog:
    """One log file belonging to a run.

    Write failures are reported through :mod:`logging` and never raised: a
    full disk must not turn a build result into a crash.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def append(self, content: str) -> None:
        try:
            append_text(self.path, content)
        except OSError as exc:
            logger.error("Failed to write to log file %s: %s", self.path, exc)

    def line(self, content: str = "") -> None:
        self.append(f"{content}\n")

    def stamp(self, content: str) -> None:
        """Append ``[<utc iso timestamp>] content``."""
        now = dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds")
        self.line(f"[{now}] {content}")

    def section(self, title: str) -> None:
        self.stamp(f"--- {title} ---")

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    def exists(self) -> bool:
        return self.path.is_file()
