"""Tests for static and live dev-server port inference."""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from branchrunner.port_detection import (
    detect_port_dynamically,
    detect_port_static,
    find_dev_script,
    parse_port_from_output,
)
from branchrunner.run_log import RunLog


def _manifest(root: Path, **content: Any) -> None:
    (root / "package.json").write_text(json.dumps(content), encoding="utf-8")


@pytest.mark.unit
def test_explicit_script_port_is_high_confidence(tmp_path: Path) -> None:
    _manifest(tmp_path, scripts={"dev": "next dev -p 4321"}, dependencies={"next": "14"})

    result = detect_port_static(tmp_path)

    assert result is not None
    assert (result.port, result.confidence) == (4321, "high")


@pytest.mark.unit
def test_vite_config_port_beats_vite_default(tmp_path: Path) -> None:
    _manifest(tmp_path, scripts={"dev": "vite"}, devDependencies={"vite": "5"})
    (tmp_path / "vite.config.ts").write_text("export default { server: { port: 5400 } }", encoding="utf-8")

    result = detect_port_static(tmp_path)

    assert (result.port, result.confidence, result.source) == (5400, "high", "vite.config.ts")


@pytest.mark.unit
@pytest.mark.parametrize(
    ("deps", "port"),
    [
        ({"vite": "5"}, 5173),
        ({"@angular/core": "17"}, 4200),
        ({"@vue/cli-service": "5"}, 8080),
        ({"react-scripts": "5"}, 3000),
    ],
)
def test_framework_defaults_are_medium_confidence(tmp_path: Path, deps: dict[str, str], port: int) -> None:
    _manifest(tmp_path, scripts={"start": "serve"}, dependencies=deps)

    result = detect_port_static(tmp_path)

    assert (result.port, result.confidence) == (port, "medium")


@pytest.mark.unit
def test_fallback_and_missing_manifest(tmp_path: Path) -> None:
    assert detect_port_static(tmp_path) is None

    _manifest(tmp_path, scripts={"dev": "node server.js"})
    result = detect_port_static(tmp_path)

    assert (result.port, result.confidence) == (3000, "low")


@pytest.mark.unit
def test_find_dev_script_prefers_dev_then_start_then_serve() -> None:
    assert find_dev_script({"scripts": {"serve": "x", "start": "y"}}) == "start"
    assert find_dev_script({"scripts": {"build": "x"}}) is None
    assert find_dev_script(None) is None


@pytest.mark.unit
def test_parse_port_from_output() -> None:
    assert parse_port_from_output("  Local:   http://localhost:5173/") == 5173
    assert parse_port_from_output("ready on http://0.0.0.0:8080") == 8080
    assert parse_port_from_output("compiled successfully") is None


@pytest.mark.integration
@pytest.mark.skipif(os.name == "nt", reason="fake npm is a shell script")
def test_dynamic_detection_reads_announced_url(
    tmp_path: Path, fake_bin: Callable[[str, str], Path]
) -> None:
    _manifest(tmp_path, scripts={"dev": "whatever"})
    fake_bin("npm", 'echo "Server listening at http://localhost:4173"; sleep 30')
    log = RunLog(tmp_path / "logs" / "build.log")

    result = asyncio.run(detect_port_dynamically(tmp_path, log, timeout_ms=10_000))

    assert result is not None
    assert (result.port, result.confidence) == (4173, "high")
    assert "Detected port: 4173" in log.read()


@pytest.mark.integration
@pytest.mark.skipif(os.name == "nt", reason="fake npm is a shell script")
def test_dynamic_detection_returns_none_when_server_exits_silently(
    tmp_path: Path, fake_bin: Callable[[str, str], Path]
) -> None:
    _manifest(tmp_path, scripts={"dev": "whatever"})
    fake_bin("npm", "echo starting; exit 1")

    result = asyncio.run(detect_port_dynamically(tmp_path, RunLog(tmp_path / "build.log"), timeout_ms=5_000))

    assert result is None
