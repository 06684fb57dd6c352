"""Pydantic models for jobs, repository configuration, and run results."""

from __future__ import annotations

import datetime as dt
import secrets
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ProfileKind(str, Enum):
    """Closed set of build/run/capture recipes a repository can select."""

    IOS_CAPACITOR = "ios-capacitor"
    ANDROID_CAPACITOR = "android-capacitor"
    NODE_SERVICE = "node-service"
    TAURI_APP = "tauri-app"
    WEB_GENERIC = "web-generic"
    CUSTOM = "custom"


class RunStatus(str, Enum):
    """Lifecycle state of a recorded run."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


class ResultStatus(str, Enum):
    """Terminal status returned by a profile."""

    SUCCESS = "success"
    FAILURE = "failure"


JobTrigger = Literal["webhook", "manual"]
ErrorCategory = Literal["build", "runtime", "network", "unknown"]
PortConfidence = Literal["high", "medium", "low"]


def utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def generate_run_id() -> str:
    """Return a filename-safe run id, unique across repositories.

    The timestamp keeps ids sortable; the random suffix keeps two runs that
    start in the same millisecond apart.
    """
    stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    return f"{stamp}-{secrets.token_hex(3)}"


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class BuildJob(BaseModel):
    """One push/trigger waiting to be built."""

    repo_full_name: str
    branch: str
    queued_at: str = Field(default_factory=utc_now_iso)
    trigger: JobTrigger = "webhook"
    commit_message: str | None = None
    commit_author: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        """Serialization key: jobs sharing it never run concurrently."""
        return (self.repo_full_name, self.branch)


# ---------------------------------------------------------------------------
# Run history
# ---------------------------------------------------------------------------


class DiffResult(BaseModel):
    """Screenshot regression diff against the branch baseline."""

    diff_percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    # -1 means the pixel count is unknown (hash-based estimate).
    diff_pixel_count: int = 0
    diff_image_path: str | None = None
    previous_screenshot_path: str | None = None


class Durations(BaseModel):
    """Step durations in milliseconds."""

    total: int | None = None
    git: int | None = None
    install: int | None = None
    build: int | None = None
    screenshot: int | None = None


class ErrorSummary(BaseModel):
    """Condensed error view extracted from a failed run's logs."""

    error_lines: list[str] = Field(default_factory=list)
    warning_count: int = 0
    summary: str = ""
    category: ErrorCategory = "unknown"


class RunRecord(BaseModel):
    """Persisted record of one pipeline execution."""

    branch: str
    timestamp: str = Field(default_factory=utc_now_iso)
    run_id: str
    status: RunStatus = RunStatus.RUNNING
    screenshot_path: str | None = None
    build_log_path: str | None = None
    runtime_log_path: str | None = None
    network_log_path: str | None = None
    error_message: str | None = None
    diff_result: DiffResult | None = None
    durations: Durations | None = None
    error_summary: ErrorSummary | None = None


# ---------------------------------------------------------------------------
# Repository configuration
# ---------------------------------------------------------------------------


class BuildOptions(BaseModel):
    """Per-step timeouts and device preferences, overridable per repository."""

    build_timeout_ms: int = 240_000
    runtime_timeout_ms: int = 60_000
    screenshot_timeout_ms: int = 10_000
    screenshot_delay_ms: int = 2_000
    simulator_device: str | None = None
    android_avd: str | None = None
    env_vars: dict[str, str] = Field(default_factory=dict)

    def merged(self, overrides: BuildOptions | None) -> BuildOptions:
        """Return these options overlaid with the fields explicitly set on *overrides*."""
        if overrides is None:
            return self.model_copy(deep=True)
        patch = overrides.model_dump(exclude_unset=True)
        return self.model_copy(update=patch, deep=True)


class RepoConfig(BaseModel):
    """Registry entry for one watched repository."""

    repo_full_name: str
    local_path: str = ""
    enabled: bool = True
    profile: ProfileKind = ProfileKind.WEB_GENERIC
    webhook_id: int | None = None
    dev_port: int | None = None
    detected_port: int | None = None
    last_runs: list[RunRecord] = Field(default_factory=list)
    build_options: BuildOptions | None = None
    auto_cloned: bool | None = None
    paused: bool = False


# ---------------------------------------------------------------------------
# Profile I/O
# ---------------------------------------------------------------------------


class ProfileContext(BaseModel):
    """Immutable input to a profile run."""

    model_config = ConfigDict(frozen=True)

    repo_full_name: str
    branch: str
    local_path: Path
    run_id: str
    logs_dir: Path
    screenshots_dir: Path
    dev_port: int | None = None
    build_options: BuildOptions = Field(default_factory=BuildOptions)

    @property
    def build_log_path(self) -> Path:
        return self.logs_dir / "build.log"

    @property
    def runtime_log_path(self) -> Path:
        return self.logs_dir / "runtime.log"

    @property
    def network_log_path(self) -> Path:
        return self.logs_dir / "network.log"

    @property
    def screenshot_path(self) -> Path:
        return self.screenshots_dir / f"{self.run_id}.png"


class ProfileResult(BaseModel):
    """Outcome of a profile run."""

    status: ResultStatus
    screenshot_path: str | None = None
    build_log_path: str
    runtime_log_path: str | None = None
    network_log_path: str | None = None
    error_message: str | None = None
    durations: Durations | None = None
    diff_result: DiffResult | None = None

    @model_validator(mode="after")
    def _failure_carries_message(self) -> ProfileResult:
        if self.status == ResultStatus.FAILURE and not (self.error_message or "").strip():
            self.error_message = "Unknown error"
        return self

    @property
    def succeeded(self) -> bool:
        return self.status == ResultStatus.SUCCESS


class PortDetectionResult(BaseModel):
    """Inferred dev-server port with a confidence tier."""

    port: int
    confidence: PortConfidence
    source: str
