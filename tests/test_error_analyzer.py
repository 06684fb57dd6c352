"""Tests for build-log error extraction and classification."""

from __future__ import annotations

from pathlib import Path

import pytest

from branchrunner.error_analyzer import analyze_log_content, analyze_log_file

pytestmark = pytest.mark.unit


def test_clean_log_is_unknown_with_success_summary() -> None:
    summary = analyze_log_content("Installing...\nDone in 3.2s\n")

    assert summary.error_lines == []
    assert summary.summary == "Build completed successfully"
    assert summary.category == "unknown"


def test_warnings_are_counted_once_each() -> None:
    log = "npm WARN deprecated foo@1\nnpm WARN deprecated bar@2\nnpm WARN deprecated foo@1\n"

    summary = analyze_log_content(log)

    assert summary.warning_count == 2
    assert summary.summary == "Build completed with 2 warnings"


def test_missing_module_is_named() -> None:
    summary = analyze_log_content("Error: Cannot find module 'left-pad'\n")

    assert summary.summary == "Missing module: left-pad"
    assert summary.category == "build"


def test_typescript_errors_are_counted() -> None:
    log = (
        "src/a.ts(3,5): error TS2322: Type 'string' is not assignable to type 'number'.\n"
        "src/b.ts(9,1): error TS2304: Cannot find name 'foo'.\n"
    )

    summary = analyze_log_content(log)

    assert summary.summary == "TypeScript errors (2 found)"
    assert summary.category == "build"
    assert len(summary.error_lines) == 2


def test_runtime_error_folds_at_most_three_stack_lines() -> None:
    log = "\n".join(
        [
            "TypeError: handler is not a function",
            "    at run (/app/server.js:10:5)",
            "    at next (/app/router.js:22:3)",
            "    at main (/app/index.js:4:1)",
            "    at boot (/app/boot.js:1:1)",
        ]
    )

    summary = analyze_log_content(log)

    assert summary.category == "runtime"
    assert summary.summary == "TypeError: handler is not a function"
    folded = summary.error_lines[0].splitlines()
    assert len(folded) == 4
    assert "boot.js" not in summary.error_lines[0]


def test_network_failure_category() -> None:
    summary = analyze_log_content("Error: connect ECONNREFUSED 127.0.0.1:5432\n")

    assert summary.category == "network"


def test_only_top_five_errors_are_returned() -> None:
    log = "\n".join(f"error: problem number {index}" for index in range(20))

    summary = analyze_log_content(log)

    assert len(summary.error_lines) == 5
    assert summary.error_lines[0] == "error: problem number 0"
    assert summary.summary == "10 errors found"


def test_analyze_log_file_handles_missing_file(tmp_path: Path) -> None:
    assert analyze_log_file(tmp_path / "missing.log") is None

    path = tmp_path / "build.log"
    path.write_text("fatal: repository not found\n", encoding="utf-8")

    assert analyze_log_file(path).summary == "Git operation failed"
