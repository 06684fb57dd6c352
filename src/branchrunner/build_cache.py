"""Per-repository ``node_modules`` cache keyed by the lockfile hash.

A cache entry is a tar archive plus ``cache-info.json`` under
``<cache_root>/<owner>_<repo>/node_modules/``.  Every operation is best
effort: failures are logged and reported as ``False``.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import logging
import shlex
import shutil
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from branchrunner.config import RunnerSettings
from branchrunner.file_io import write_model_json
from branchrunner.process import run_with_timeout
from branchrunner.run_log import safe_segment

logger = logging.getLogger(__name__)

LOCK_FILES = ("package-lock.json", "yarn.lock", "pnpm-lock.yaml")
NODE_MODULES = "node_modules"
ARCHIVE_NAME = "node_modules.tar"
INFO_NAME = "cache-info.json"
ARCHIVE_TIMEOUT_MS = 300_000
EXTRACT_TIMEOUT_MS = 120_000


class CacheInfo(BaseModel):
    hash: str
    created_at: str
    size: int


class RepoCacheStats(BaseModel):
    name: str
    size: int
    last_updated: str


class CacheStats(BaseModel):
    total_size: int = 0
    repos: list[RepoCacheStats] = Field(default_factory=list)


def compute_lock_hash(local_path: str | Path) -> str | None:
    """Short SHA-256 of the first lockfile found, else of ``package.json``."""
    root = Path(local_path)
    for name in (*LOCK_FILES, "package.json"):
        candidate = root / name
        if candidate.is_file():
            try:
                return hashlib.sha256(candidate.read_bytes()).hexdigest()[:16]
            except OSError as exc:
                logger.warning("Could not hash %s: %s", candidate, exc)
                return None
    return None


class BuildCache:
    """Dependency cache rooted at *root*; a disabled cache never hits."""

    def __init__(self, root: str | Path, *, enabled: bool = True) -> None:
        self.root = Path(root)
        self.enabled = enabled

    @classmethod
    def from_settings(cls, settings: RunnerSettings) -> BuildCache:
        return cls(settings.cache_root, enabled=settings.cache_enabled)

    def _entry_dir(self, repo_full_name: str, cache_type: str = NODE_MODULES) -> Path:
        return self.root / safe_segment(repo_full_name) / cache_type

    def get_info(self, repo_full_name: str, cache_type: str = NODE_MODULES) -> CacheInfo | None:
        path = self._entry_dir(repo_full_name, cache_type) / INFO_NAME
        if not path.is_file():
            return None
        try:
            return CacheInfo.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError):
            return None

    async def cache_node_modules(self, repo_full_name: str, local_path: str | Path) -> bool:
        """Archive the working tree's ``node_modules`` under the current lock hash."""
        if not self.enabled:
            return False
        if not (Path(local_path) / NODE_MODULES).is_dir():
            return False
        lock_hash = compute_lock_hash(local_path)
        if lock_hash is None:
            return False

        entry = self._entry_dir(repo_full_name)
        archive = entry / ARCHIVE_NAME
        logger.info("Caching node_modules for %s (hash: %s)", repo_full_name, lock_hash)
        try:
            entry.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Failed to cache node_modules: %s", exc)
            return False
        command = shlex.join(["tar", "-cf", str(archive), "-C", str(local_path), NODE_MODULES])
        result = await run_with_timeout(command, entry, ARCHIVE_TIMEOUT_MS)
        if not result.success:
            logger.error("Failed to cache node_modules: %s", result.stderr.strip())
            return False

        size = archive.stat().st_size
        info = CacheInfo(
            hash=lock_hash,
            created_at=dt.datetime.now(dt.timezone.utc).isoformat(),
            size=size,
        )
        write_model_json(entry / INFO_NAME, info)
        logger.info("Cached node_modules (%.1f MB)", size / 1024 / 1024)
        return True

    async def restore_node_modules(self, repo_full_name: str, local_path: str | Path) -> bool:
        """Replace ``node_modules`` from cache when the lock hash matches."""
        if not self.enabled:
            return False
        lock_hash = compute_lock_hash(local_path)
        if lock_hash is None:
            return False

        info = self.get_info(repo_full_name)
        if info is None or info.hash != lock_hash:
            logger.info(
                "Cache miss for %s (need %s, have %s)",
                repo_full_name,
                lock_hash,
                info.hash if info else "none",
            )
            return False
        archive = self._entry_dir(repo_full_name) / ARCHIVE_NAME
        if not archive.is_file():
            return False

        logger.info("Restoring node_modules from cache for %s", repo_full_name)
        shutil.rmtree(Path(local_path) / NODE_MODULES, ignore_errors=True)
        result = await run_with_timeout(
            shlex.join(["tar", "-xf", str(archive), "-C", str(local_path)]),
            local_path,
            EXTRACT_TIMEOUT_MS,
        )
        if not result.success:
            logger.error("Failed to restore node_modules: %s", result.stderr.strip())
            return False
        return True

    def clear(self, repo_full_name: str) -> bool:
        repo_dir = self.root / safe_segment(repo_full_name)
        if not repo_dir.exists():
            return False
        try:
            shutil.rmtree(repo_dir)
        except OSError as exc:
            logger.error("Failed to clear cache: %s", exc)
            return False
        logger.info("Cleared cache for %s", repo_full_name)
        return True

    def stats(self) -> CacheStats:
        stats = CacheStats()
        if not self.root.is_dir():
            return stats
        for repo_dir in sorted(self.root.iterdir()):
            if not repo_dir.is_dir():
                continue
            size = 0
            latest = repo_dir.stat().st_mtime
            for path in repo_dir.rglob("*"):
                if path.is_file():
                    file_stat = path.stat()
                    size += file_stat.st_size
                    latest = max(latest, file_stat.st_mtime)
            stats.repos.append(
                RepoCacheStats(
                    # GitHub owners cannot contain "_", so the first one is the separator.
                    name=repo_dir.name.replace("_", "/", 1),
                    size=size,
                    last_updated=dt.datetime.fromtimestamp(latest, dt.timezone.utc).isoformat(),
                )
            )
            stats.total_size += size
        return stats

    def clean_old(self, max_age_days: int = 30) -> int:
        """Delete cache entries older than *max_age_days*; returns how many went."""
        if not self.root.is_dir():
            return 0
        cutoff = dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=max_age_days)
        deleted = 0
        for info_path in self.root.glob(f"*/*/{INFO_NAME}"):
            try:
                info = CacheInfo.model_validate_json(info_path.read_text(encoding="utf-8"))
                created = dt.datetime.fromisoformat(info.created_at)
            except (OSError, ValueError, ValidationError):
                continue
            if created.tzinfo is None:
                created = created.replace(tzinfo=dt.timezone.utc)
            if created < cutoff:
                shutil.rmtree(info_path.parent, ignore_errors=True)
                deleted += 1
        return deleted
