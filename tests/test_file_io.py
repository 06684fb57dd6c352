"""Tests for persisted documents and run-log appends."""

from __future__ import annotations

import gc
import json
import threading
from pathlib import Path

import pytest

import branchrunner.file_io as file_io
from branchrunner.run_log import RunLog
from branchrunner.schemas import RepoConfig

pytestmark = pytest.mark.unit


def test_aliases_of_one_log_share_a_lock_while_it_is_held(tmp_path: Path) -> None:
    primary = tmp_path / "logs" / "build.log"
    alias = tmp_path / "logs" / ".." / "logs" / "build.log"

    with file_io.locked_path(primary):
        assert file_io._lock_for(alias).locked()


def test_lock_registry_does_not_grow_with_each_run(tmp_path: Path) -> None:
    gc.collect()
    before = file_io.tracked_lock_count()

    for index in range(300):
        RunLog(tmp_path / f"run-{index}" / "build.log").stamp("started")
    gc.collect()

    assert file_io.tracked_lock_count() <= before
    assert (tmp_path / "run-299" / "build.log").read_text(encoding="utf-8").endswith("started\n")


def test_write_model_json_replaces_document(tmp_path: Path) -> None:
    path = tmp_path / "data" / "config.json"

    file_io.write_model_json(path, RepoConfig(repo_full_name="acme/app", dev_port=3000))
    file_io.write_model_json(path, RepoConfig(repo_full_name="acme/lib"), exclude_none=True)

    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["repo_full_name"] == "acme/lib"
    assert "dev_port" not in document
    assert list(path.parent.glob("*.tmp")) == []


def test_failed_replace_keeps_old_document_and_removes_temp_file(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    path = tmp_path / "data" / "config.json"
    file_io.atomic_write_text(path, '{"repos": []}')

    def busy(_self: Path, _target: Path) -> Path:
        raise PermissionError("busy")

    monkeypatch.setattr(Path, "replace", busy)

    with pytest.raises(PermissionError):
        file_io.atomic_write_text(path, "partial")

    assert path.read_text(encoding="utf-8") == '{"repos": []}'
    assert list(path.parent.glob(f"{path.name}.*.tmp")) == []


def test_concurrent_appends_keep_lines_whole(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "runtime.log"

    def writer(name: str) -> None:
        for index in range(50):
            file_io.append_text(path, f"{name}-{index}\n")

    threads = [threading.Thread(target=writer, args=(name,)) for name in ("stdout", "stderr")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 100
    assert sorted(lines) == sorted(f"{name}-{index}" for name in ("stdout", "stderr") for index in range(50))
