"""Headless Playwright browser used to capture web dev servers.

Console messages are written to the runtime log and request/response
traffic to the network log while the page loads.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from branchrunner.errors import ToolUnavailableError
from branchrunner.run_log import RunLog

logger = logging.getLogger(__name__)

DEFAULT_VIEWPORT = (1440, 900)
PAGE_LOAD_TIMEOUT_MS = 30_000


class BrowserEnvironment:
    """Manages one Chromium instance and page for a capture.

    Usage::

        async with BrowserEnvironment(runtime_log=rt, network_log=net) as env:
            await env.navigate("http://localhost:5173")
            await env.save_screenshot(path)
    """

    def __init__(
        self,
        width: int = DEFAULT_VIEWPORT[0],
        height: int = DEFAULT_VIEWPORT[1],
        headless: bool = True,
        *,
        runtime_log: RunLog | None = None,
        network_log: RunLog | None = None,
    ) -> None:
        self.width = width
        self.height = height
        self.headless = headless
        self.runtime_log = runtime_log
        self.network_log = network_log
        self._playwright: Any = None
        self._browser: Any = None
        self._page: Any = None

    async def __aenter__(self) -> BrowserEnvironment:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Launch the browser and attach the log hooks."""
        try:
            from playwright.async_api import async_playwright
        except ImportError as exc:
            raise ToolUnavailableError(
                "playwright",
                "Install with: pip install playwright && python -m playwright install chromium",
            ) from exc

        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(headless=self.headless)
            context = await self._browser.new_context(
                viewport={"width": self.width, "height": self.height},
            )
            self._page = await context.new_page()
        except Exception:
            await self.stop()
            raise
        self._attach_hooks(self._page)
        logger.info("Browser started: %dx%d headless=%s", self.width, self.height, self.headless)

    async def stop(self) -> None:
        """Close the browser."""
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
        self._page = None

    def _attach_hooks(self, page: Any) -> None:
        runtime_log = self.runtime_log
        network_log = self.network_log
        if runtime_log is not None:
            page.on("console", lambda msg: runtime_log.stamp(f"[{str(msg.type).upper()}] {msg.text}"))
            page.on("pageerror", lambda err: runtime_log.stamp(f"[pageerror] {err}"))
        if network_log is not None:
            page.on("request", lambda req: network_log.stamp(f"-> {req.method} {req.url}"))
            page.on("response", lambda res: network_log.stamp(f"<- {res.status} {res.url}"))
            page.on(
                "requestfailed",
                lambda req: network_log.stamp(f"XX {req.method} {req.url} {req.failure or ''}".rstrip()),
            )

    @property
    def page(self) -> Any:
        """The active Playwright page."""
        if not self._page:
            raise RuntimeError("Browser not started. Call start() first.")
        return self._page

    async def navigate(self, url: str, timeout_ms: int = PAGE_LOAD_TIMEOUT_MS) -> bool:
        """Load *url*; ``False`` when the page did not settle before the timeout."""
        from playwright.async_api import TimeoutError as PlaywrightTimeoutError

        logger.info("Navigating to %s", url)
        try:
            await self.page.goto(url, timeout=timeout_ms, wait_until="networkidle")
        except PlaywrightTimeoutError:
            logger.warning("Page load timed out after %sms: %s", timeout_ms, url)
            return False
        return True

    async def save_screenshot(self, path: str | Path) -> None:
        """Save a full-page PNG screenshot to disk."""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        await self.page.screenshot(path=str(path), full_page=True, type="png")
