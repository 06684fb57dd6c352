"""Repository registry and run-history store.

The pipeline talks to the store only through :class:`ConfigStore`.
:class:`JsonConfigStore` is the bundled implementation: one JSON document
holding every :class:`RepoConfig`, rewritten atomically on each change.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field, ValidationError

from branchrunner.file_io import write_model_json
from branchrunner.schemas import RepoConfig, RunRecord, RunStatus

logger = logging.getLogger(__name__)

MAX_RUNS_PER_REPO = 100


@runtime_checkable
class ConfigStore(Protocol):
    """Narrow contract the pipeline needs from the configuration store."""

    def get_repo_config(self, repo_full_name: str) -> RepoConfig | None: ...

    def update_repo_config(self, repo_full_name: str, patch: dict[str, Any]) -> RepoConfig | None: ...

    def get_previous_successful_run(
        self, repo_full_name: str, branch: str, excluding_run_id: str
    ) -> RunRecord | None: ...

    def is_repo_paused(self, repo_full_name: str) -> bool: ...

    def add_run_record(self, repo_full_name: str, run: RunRecord) -> None: ...

    def update_run_record(self, repo_full_name: str, run_id: str, patch: dict[str, Any]) -> None: ...


class _StoreDocument(BaseModel):
    repos: list[RepoConfig] = Field(default_factory=list)


class JsonConfigStore:
    """File-backed :class:`ConfigStore`; history is kept newest-first."""

    def __init__(self, path: str | Path, *, max_runs: int = MAX_RUNS_PER_REPO) -> None:
        self.path = Path(path)
        self.max_runs = max(1, int(max_runs))
        self._lock = threading.RLock()
        self._doc = self._load()

    def _load(self) -> _StoreDocument:
        if not self.path.is_file():
            return _StoreDocument()
        try:
            raw = self.path.read_text(encoding="utf-8")
            if not raw.strip():
                return _StoreDocument()
            return _StoreDocument.model_validate(json.loads(raw))
        except (OSError, ValueError, ValidationError) as exc:
            logger.error("Could not load config store %s, starting empty: %s", self.path, exc)
            return _StoreDocument()

    def _save(self) -> None:
        write_model_json(self.path, self._doc, exclude_none=True)

    def _find(self, repo_full_name: str) -> RepoConfig | None:
        for repo in self._doc.repos:
            if repo.repo_full_name == repo_full_name:
                return repo
        return None

    # -- registry --

    def list_repos(self) -> list[RepoConfig]:
        with self._lock:
            return [repo.model_copy(deep=True) for repo in self._doc.repos]

    def get_repo_config(self, repo_full_name: str) -> RepoConfig | None:
        with self._lock:
            repo = self._find(repo_full_name)
            return repo.model_copy(deep=True) if repo else None

    def add_repo_config(self, repo: RepoConfig) -> RepoConfig:
        with self._lock:
            existing = self._find(repo.repo_full_name)
            if existing is None:
                self._doc.repos.append(repo.model_copy(deep=True))
            else:
                index = self._doc.repos.index(existing)
                patch = repo.model_dump(exclude_unset=True)
                self._doc.repos[index] = RepoConfig.model_validate({**existing.model_dump(), **patch})
            self._save()
            return self._find(repo.repo_full_name).model_copy(deep=True)  # type: ignore[union-attr]

    def update_repo_config(self, repo_full_name: str, patch: dict[str, Any]) -> RepoConfig | None:
        with self._lock:
            existing = self._find(repo_full_name)
            if existing is None:
                return None
            merged = RepoConfig.model_validate({**existing.model_dump(), **patch})
            self._doc.repos[self._doc.repos.index(existing)] = merged
            self._save()
            return merged.model_copy(deep=True)

    def delete_repo_config(self, repo_full_name: str) -> bool:
        with self._lock:
            existing = self._find(repo_full_name)
            if existing is None:
                return False
            self._doc.repos.remove(existing)
            self._save()
            return True

    def is_repo_paused(self, repo_full_name: str) -> bool:
        with self._lock:
            repo = self._find(repo_full_name)
            return bool(repo and repo.paused)

    def set_paused(self, repo_full_name: str, paused: bool) -> bool:
        return self.update_repo_config(repo_full_name, {"paused": paused}) is not None

    # -- history --

    def add_run_record(self, repo_full_name: str, run: RunRecord) -> None:
        with self._lock:
            repo = self._find(repo_full_name)
            if repo is None:
                logger.warning("Ignoring run %s for unknown repo %s", run.run_id, repo_full_name)
                return
            repo.last_runs.insert(0, run.model_copy(deep=True))
            del repo.last_runs[self.max_runs :]
            self._save()

    def update_run_record(self, repo_full_name: str, run_id: str, patch: dict[str, Any]) -> None:
        with self._lock:
            repo = self._find(repo_full_name)
            if repo is None:
                return
            for index, run in enumerate(repo.last_runs):
                if run.run_id == run_id:
                    repo.last_runs[index] = RunRecord.model_validate({**run.model_dump(), **patch})
                    self._save()
                    return

    def get_runs_by_branch(self, repo_full_name: str, branch: str, limit: int = 20) -> list[RunRecord]:
        with self._lock:
            repo = self._find(repo_full_name)
            if repo is None:
                return []
            runs = [run for run in repo.last_runs if run.branch == branch]
            return [run.model_copy(deep=True) for run in runs[: max(0, limit)]]

    def get_latest_run(self, repo_full_name: str, branch: str | None = None) -> RunRecord | None:
        with self._lock:
            repo = self._find(repo_full_name)
            if repo is None:
                return None
            for run in repo.last_runs:
                if branch is None or run.branch == branch:
                    return run.model_copy(deep=True)
            return None

    def get_previous_successful_run(
        self, repo_full_name: str, branch: str, excluding_run_id: str
    ) -> RunRecord | None:
        with self._lock:
            repo = self._find(repo_full_name)
            if repo is None:
                return None
            for run in repo.last_runs:
                if (
                    run.branch == branch
                    and run.status == RunStatus.SUCCESS
                    and run.run_id != excluding_run_id
                    and run.screenshot_path
                ):
                    return run.model_copy(deep=True)
            return None
