"""Shared pytest configuration: markers, ordering, subprocess and browser fixtures."""

from __future__ import annotations

import os
import stat
import sys
import time
import types
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: tests that wait on real timeouts")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture
def git_identity(monkeypatch: pytest.MonkeyPatch) -> None:
    """Let test repositories commit without touching the user's git config."""
    for key, value in {
        "GIT_AUTHOR_NAME": "Test User",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test User",
        "GIT_COMMITTER_EMAIL": "test@example.com",
        "GIT_CONFIG_NOSYSTEM": "1",
    }.items():
        monkeypatch.setenv(key, value)


@pytest.fixture
def fake_bin(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[[str, str], Path]:
    """Install shell scripts that shadow real tools on ``PATH``.

    ``fake_bin("npm", 'echo hi')`` writes an executable ``npm`` whose body is
    the given shell snippet.
    """
    bin_dir = tmp_path / "fake-bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def _install(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _install


class FakePlaywrightTimeoutError(Exception):
    pass


class RecordingPage:
    """Page double that records calls and writes a tiny PNG on screenshot."""

    def __init__(self) -> None:
        self.handlers: dict[str, Any] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.goto_error: Exception | None = None

    def on(self, event: str, handler: Any) -> None:
        self.handlers[event] = handler

    async def goto(self, url: str, *, timeout: int, wait_until: str) -> None:
        self.calls.append(("goto", url, timeout, wait_until))
        if self.goto_error is not None:
            raise self.goto_error

    async def screenshot(self, *, path: str, full_page: bool, type: str) -> None:
        self.calls.append(("screenshot", full_page, type))
        Path(path).write_bytes(b"\x89PNG")


class FakePlaywright:
    """Stand-in for ``playwright.async_api``; ``captured`` records lifecycle calls."""

    TimeoutError = FakePlaywrightTimeoutError

    def __init__(self) -> None:
        self.page = RecordingPage()
        self.captured: dict[str, Any] = {}
        self.launch_error: Exception | None = None

    def module(self) -> types.ModuleType:
        fake = self

        class _Context:
            async def new_page(self) -> RecordingPage:
                return fake.page

        class _Browser:
            async def new_context(self, *, viewport: dict[str, int]) -> _Context:
                fake.captured["viewport"] = viewport
                return _Context()

            async def close(self) -> None:
                fake.captured["browser_closed"] = True

        class _Chromium:
            async def launch(self, *, headless: bool) -> _Browser:
                fake.captured["headless"] = headless
                if fake.launch_error is not None:
                    raise fake.launch_error
                return _Browser()

        class _Driver:
            chromium = _Chromium()

            async def stop(self) -> None:
                fake.captured["playwright_stopped"] = True

        class _Starter:
            async def start(self) -> _Driver:
                return _Driver()

        module = types.ModuleType("playwright.async_api")
        module.async_playwright = lambda: _Starter()  # type: ignore[attr-defined]
        module.TimeoutError = FakePlaywrightTimeoutError  # type: ignore[attr-defined]
        return module


@pytest.fixture
def fake_playwright(monkeypatch: pytest.MonkeyPatch) -> FakePlaywright:
    """Install a recording Playwright double in ``sys.modules``."""
    fake = FakePlaywright()
    monkeypatch.setitem(sys.modules, "playwright.async_api", fake.module())
    return fake


def _process_alive(pid: int) -> bool:
    try:
        stat_line = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
    except OSError:
        return False
    # Unreaped zombies count as gone.
    return stat_line.rsplit(")", 1)[-1].split()[:1] != ["Z"]


@pytest.fixture
def wait_until_gone() -> Callable[[int], bool]:
    """Return a poller that reports whether *pid* exits within two seconds (Linux only)."""

    def _wait(pid: int, timeout: float = 2.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not _process_alive(pid):
                return True
            time.sleep(0.05)
        return not _process_alive(pid)

    return _wait
