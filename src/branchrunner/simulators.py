"""iOS simulator discovery with a short-lived cache of ``simctl`` listings."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

from branchrunner.process import ExecResult, run_with_timeout

logger = logging.getLogger(__name__)

DEFAULT_SIMULATOR = "iPhone 15 Pro"
PREFERRED_SIMULATORS = (
    "iPhone 16 Pro",
    "iPhone 16",
    "iPhone 15 Pro",
    "iPhone 15",
    "iPhone 14 Pro",
    "iPhone 14",
)
CACHE_TTL_SECONDS = 300.0
LIST_COMMAND = "xcrun simctl list devices available -j"

CommandRunner = Callable[[str, Path, int], Awaitable[ExecResult]]


def parse_device_names(listing: str) -> list[str]:
    """Names of available devices in ``simctl list -j`` output, runtimes flattened."""
    try:
        data = json.loads(listing)
    except ValueError:
        return []
    names: list[str] = []
    for devices in (data.get("devices") or {}).values():
        for device in devices or []:
            if device.get("isAvailable", True) and device.get("name"):
                names.append(str(device["name"]))
    return names


def choose_device(
    available: Sequence[str],
    requested: str | None = None,
    preferred: Sequence[str] = PREFERRED_SIMULATORS,
) -> str:
    """Requested (if available) > ranked preference > first iPhone > default."""
    if requested and requested in available:
        return requested
    for name in preferred:
        if name in available:
            return name
    for name in available:
        if name.startswith("iPhone"):
            return name
    return requested or DEFAULT_SIMULATOR


class SimulatorCatalog:
    """Caches the available-device listing for ``ttl_seconds``."""

    def __init__(
        self,
        *,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        runner: CommandRunner | None = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._runner = runner or run_with_timeout
        self._names: list[str] | None = None
        self._fetched_at = 0.0

    def invalidate(self) -> None:
        self._names = None

    async def available_devices(self) -> list[str]:
        now = self._clock()
        if self._names is not None and now - self._fetched_at < self.ttl_seconds:
            return list(self._names)
        result = await self._runner(LIST_COMMAND, Path.cwd(), 30_000)
        if not result.success:
            logger.warning("simctl list failed: %s", result.stderr.strip())
            return []
        self._names = parse_device_names(result.stdout)
        self._fetched_at = now
        return list(self._names)

    async def pick(self, requested: str | None = None) -> str:
        return choose_device(await self.available_devices(), requested)


default_catalog = SimulatorCatalog()
