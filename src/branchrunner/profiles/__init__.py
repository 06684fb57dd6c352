"""Profile dispatch.

Every :class:`ProfileKind` maps to exactly one runner; a kind without a
runner is an import-time error.  :func:`run_profile` is the boundary where
any exception becomes a failure result.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from branchrunner.build_cache import BuildCache
from branchrunner.errors import BranchRunnerError
from branchrunner.profiles import ios_capacitor, node_service, stubs, tauri_app, web_generic
from branchrunner.profiles.base import ProfileRun
from branchrunner.schemas import ProfileContext, ProfileKind, ProfileResult
from branchrunner.store import ConfigStore

logger = logging.getLogger(__name__)

ProfileRunner = Callable[[ProfileRun], Awaitable[ProfileResult]]


async def _tauri(run: ProfileRun) -> ProfileResult:
    if tauri_app.capture_supported():
        return await tauri_app.run(run)
    return await stubs.tauri_unsupported(run)


PROFILE_RUNNERS: dict[ProfileKind, ProfileRunner] = {
    ProfileKind.IOS_CAPACITOR: ios_capacitor.run,
    ProfileKind.ANDROID_CAPACITOR: stubs.android_capacitor,
    ProfileKind.NODE_SERVICE: node_service.run,
    ProfileKind.TAURI_APP: _tauri,
    ProfileKind.WEB_GENERIC: web_generic.run,
    ProfileKind.CUSTOM: stubs.custom,
}

_missing = set(ProfileKind) - set(PROFILE_RUNNERS)
if _missing:
    raise ImportError(f"No profile runner registered for: {sorted(kind.value for kind in _missing)}")


async def run_profile(
    context: ProfileContext,
    kind: ProfileKind | str,
    *,
    store: ConfigStore | None = None,
    cache: BuildCache | None = None,
) -> ProfileResult:
    """Run the profile for *kind*; never raises."""
    run = ProfileRun(context, store=store, cache=cache)
    try:
        runner = PROFILE_RUNNERS[ProfileKind(kind)]
    except ValueError:
        return run.failure(f"Unknown profile: {kind}")
    try:
        return await runner(run)
    except BranchRunnerError as exc:
        return run.failure(str(exc))
    except Exception as exc:
        logger.exception("Profile %s crashed for %s/%s", kind, context.repo_full_name, context.branch)
        return run.failure(f"Unexpected error: {exc}")


__all__ = ["PROFILE_RUNNERS", "ProfileRun", "ProfileRunner", "run_profile"]
