"""Environment-driven runner settings."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field

from branchrunner.schemas import BuildOptions, RepoConfig

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_int(env: Mapping[str, str], key: str, default: int, *, minimum: int = 0) -> int:
    raw = str(env.get(key, "") or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %s", key, raw, default)
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = str(env.get(key, "") or "").strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    return default


class RunnerSettings(BaseModel):
    """Process-wide configuration for the build pipeline."""

    github_token: str | None = None
    clone_base_dir: Path = Field(default_factory=lambda: Path.home() / "branchrunner-repos")
    data_dir: Path = Field(default_factory=lambda: Path.cwd() / "data")
    config_path: Path | None = None
    max_workers: int = 1
    cache_enabled: bool = True
    notify_webhook_url: str | None = None
    default_build_options: BuildOptions = Field(default_factory=BuildOptions)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> RunnerSettings:
        """Build settings from ``os.environ`` (or an explicit mapping)."""
        source = os.environ if env is None else env
        defaults = BuildOptions()
        build_options = BuildOptions(
            build_timeout_ms=_env_int(
                source, "BRANCHRUNNER_BUILD_TIMEOUT_MS", defaults.build_timeout_ms, minimum=1
            ),
            runtime_timeout_ms=_env_int(
                source, "BRANCHRUNNER_RUNTIME_TIMEOUT_MS", defaults.runtime_timeout_ms, minimum=1
            ),
            screenshot_timeout_ms=_env_int(
                source,
                "BRANCHRUNNER_SCREENSHOT_TIMEOUT_MS",
                defaults.screenshot_timeout_ms,
                minimum=1,
            ),
            screenshot_delay_ms=_env_int(
                source, "BRANCHRUNNER_SCREENSHOT_DELAY_MS", defaults.screenshot_delay_ms
            ),
        )
        settings = cls(
            github_token=(source.get("GITHUB_TOKEN") or "").strip() or None,
            max_workers=_env_int(source, "BRANCHRUNNER_MAX_WORKERS", 1, minimum=1),
            cache_enabled=_env_bool(source, "BRANCHRUNNER_CACHE_ENABLED", True),
            notify_webhook_url=(source.get("BRANCHRUNNER_NOTIFY_WEBHOOK_URL") or "").strip()
            or None,
            default_build_options=build_options,
        )
        clone_dir = (source.get("BRANCHRUNNER_CLONE_DIR") or "").strip()
        if clone_dir:
            settings.clone_base_dir = Path(os.path.expanduser(clone_dir))
        data_dir = (source.get("BRANCHRUNNER_DATA_DIR") or "").strip()
        if data_dir:
            settings.data_dir = Path(os.path.expanduser(data_dir))
        config_path = (source.get("BRANCHRUNNER_CONFIG_PATH") or "").strip()
        if config_path:
            settings.config_path = Path(os.path.expanduser(config_path))
        return settings

    @property
    def store_path(self) -> Path:
        return self.config_path or (self.data_dir / "config.json")

    @property
    def logs_root(self) -> Path:
        return self.data_dir / "logs"

    @property
    def screenshots_root(self) -> Path:
        return self.data_dir / "screenshots"

    @property
    def cache_root(self) -> Path:
        return self.data_dir / "cache"

    def effective_build_options(self, repo: RepoConfig) -> BuildOptions:
        """Settings defaults overlaid with the repository's own options."""
        return self.default_build_options.merged(repo.build_options)
