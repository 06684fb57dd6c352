"""Tests for CLI dispatch and command output."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

import branchrunner.__main__ as main_module


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(main_module, "_load_dotenv", lambda: None)
    data_dir = tmp_path / "data"
    monkeypatch.setenv("BRANCHRUNNER_DATA_DIR", str(data_dir))
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.delenv("BRANCHRUNNER_CONFIG_PATH", raising=False)
    return data_dir


def test_main_without_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert main_module.main([]) == 1
    assert "usage: branchrunner" in capsys.readouterr().out


def test_cache_stats_on_empty_cache(capsys: pytest.CaptureFixture[str]) -> None:
    assert main_module.main(["cache", "stats"]) == 0
    assert json.loads(capsys.readouterr().out) == {"total_size": 0, "repos": []}


def test_cache_clear_missing_repo_fails() -> None:
    assert main_module.main(["cache", "clear", "acme/app"]) == 1


def test_detect_port_static(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / "package.json").write_text('{"scripts": {"dev": "vite --port 5999"}}', encoding="utf-8")

    assert main_module.main(["detect-port", str(tmp_path)]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["port"] == 5999
    assert payload["confidence"] == "high"


def test_detect_port_without_manifest_fails(tmp_path: Path) -> None:
    assert main_module.main(["detect-port", str(tmp_path / "nothing")]) == 1


def test_diff_with_missing_screenshot_fails(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / "a.png").write_bytes(b"a")

    assert main_module.main(["diff", str(tmp_path / "a.png"), str(tmp_path / "b.png"), str(tmp_path / "d.png")]) == 1
    assert "could not be compared" in capsys.readouterr().err


def test_clone_without_token_reports_failure(capsys: pytest.CaptureFixture[str]) -> None:
    assert main_module.main(["clone", "acme/app"]) == 1
    assert json.loads(capsys.readouterr().out)["message"] == "GITHUB_TOKEN not set"


def test_run_unconfigured_repo_requires_profile(capsys: pytest.CaptureFixture[str]) -> None:
    assert main_module.main(["run", "acme/app", "main"]) == 1
    assert "pass --profile" in capsys.readouterr().err


def test_entrypoint_source_is_ascii() -> None:
    assert Path(main_module.__file__).read_text(encoding="utf-8").isascii()
