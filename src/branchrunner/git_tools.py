"""Git helpers for cloning, syncing, and recovering shared working trees."""

from __future__ import annotations

import logging
import re
import shlex
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from branchrunner.config import RunnerSettings
from branchrunner.errors import CloneError, CommandFailedError, GitError
from branchrunner.process import ExecResult, run_with_timeout
from branchrunner.retry import FETCH_RETRY_POLICY, RetryPolicy, SleepFn, retry_with_policy
from branchrunner.run_log import RunLog
from branchrunner.schemas import RepoConfig
from branchrunner.strategy import Outcome, Strategy, StrategyChain

if TYPE_CHECKING:
    from branchrunner.store import ConfigStore

logger = logging.getLogger(__name__)

PROTECTED_BRANCHES = ("main", "master")
GIT_TIMEOUT_MS = 30_000
FETCH_TIMEOUT_MS = 60_000
CLONE_TIMEOUT_MS = 300_000
INSTALL_TIMEOUT_MS = 300_000
_REPO_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}


async def _run_git(
    *args: str,
    cwd: str | Path,
    check: bool = True,
    timeout_ms: int = GIT_TIMEOUT_MS,
    log: RunLog | None = None,
) -> ExecResult:
    """Run a git command and return its :class:`ExecResult`."""
    command = shlex.join(["git", *args])
    logger.debug("%s (cwd=%s)", command, cwd)
    if log is not None:
        log.stamp(f"$ {command}")
    result = await run_with_timeout(command, cwd, timeout_ms, env=_GIT_ENV)
    if log is not None and result.output:
        log.line(result.output)
    if check and not result.success:
        detail = "timed out" if result.timed_out else f"rc={result.exit_code}"
        raise GitError(f"`{command}` failed ({detail}): {result.stderr.strip()}")
    return result


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


async def current_branch(repo: str | Path) -> str:
    """Return the name of the checked-out branch."""
    return (await _run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=repo)).stdout.strip()


async def head_sha(repo: str | Path) -> str:
    """Return the short SHA of HEAD."""
    return (await _run_git("rev-parse", "--short", "HEAD", cwd=repo)).stdout.strip()


async def ref_exists(repo: str | Path, ref: str) -> bool:
    result = await _run_git("rev-parse", "--verify", "--quiet", ref, cwd=repo, check=False)
    return result.success


# ---------------------------------------------------------------------------
# Clone
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CloneResult:
    success: bool
    local_path: str
    message: str


def _redact(text: str, secret: str | None) -> str:
    if not secret:
        return text
    return text.replace(secret, "***")


async def install_dependencies(
    local_path: str | Path, timeout_ms: int = INSTALL_TIMEOUT_MS
) -> ExecResult | None:
    """Install node dependencies when a manifest exists; ``None`` when there is none."""
    if not (Path(local_path) / "package.json").is_file():
        return None
    return await run_with_timeout("npm ci --prefer-offline || npm install", local_path, timeout_ms)


async def clone_repo(
    repo_full_name: str,
    settings: RunnerSettings,
    *,
    base_dir: str | Path | None = None,
) -> CloneResult:
    """Shallow-clone *repo_full_name* into ``<base>/<owner>/<repo>``.

    Already-cloned targets succeed without touching the tree.  A failed
    dependency install is logged but does not fail the clone.
    """
    token = settings.github_token
    if not token:
        return CloneResult(success=False, local_path="", message="GITHUB_TOKEN not set")
    if not _REPO_NAME_RE.match(repo_full_name or ""):
        return CloneResult(
            success=False, local_path="", message=f"Invalid repository name: {repo_full_name!r}"
        )

    owner, repo = repo_full_name.split("/", 1)
    base = Path(base_dir) if base_dir is not None else settings.clone_base_dir
    local_path = base / owner / repo
    local_path.parent.mkdir(parents=True, exist_ok=True)

    if (local_path / ".git").exists():
        logger.info("Repository already exists at %s", local_path)
        return CloneResult(success=True, local_path=str(local_path), message="Repository already exists")

    logger.info("Cloning %s to %s", repo_full_name, local_path)
    clone_url = f"https://{token}@github.com/{repo_full_name}.git"
    command = shlex.join(["git", "clone", "--depth=1", "--no-single-branch", clone_url, str(local_path)])
    result = await run_with_timeout(command, local_path.parent, CLONE_TIMEOUT_MS, env=_GIT_ENV)
    if not result.success:
        stderr = _redact(result.stderr.strip(), token)
        logger.error("Clone of %s failed: %s", repo_full_name, stderr)
        return CloneResult(success=False, local_path="", message=f"Clone failed: {stderr}")

    logger.info("Successfully cloned %s", repo_full_name)
    install = await install_dependencies(local_path)
    if install is not None:
        if install.success:
            logger.info("Dependency install completed for %s", repo_full_name)
        else:
            logger.warning("Dependency install failed for %s: %s", repo_full_name, install.stderr.strip())

    return CloneResult(success=True, local_path=str(local_path), message="Repository cloned successfully")


async def ensure_repo_cloned(
    repo: RepoConfig,
    store: ConfigStore,
    settings: RunnerSettings,
) -> RepoConfig:
    """Return *repo* with a usable working tree, cloning and recording it if needed."""
    if repo.local_path and (Path(repo.local_path) / ".git").exists():
        return repo

    result = await clone_repo(repo.repo_full_name, settings)
    if not result.success:
        raise CloneError(f"Failed to clone repo: {result.message}")

    updated = store.update_repo_config(
        repo.repo_full_name, {"local_path": result.local_path, "auto_cloned": True}
    )
    return updated or repo.model_copy(update={"local_path": result.local_path, "auto_cloned": True})


def delete_cloned_repo(local_path: str | Path) -> bool:
    """Remove a cloned working tree; returns ``False`` when nothing was removed."""
    path = Path(local_path)
    if not path.exists():
        return False
    try:
        shutil.rmtree(path)
    except OSError as exc:
        logger.error("Failed to delete repo at %s: %s", path, exc)
        return False
    return True


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncResult:
    success: bool
    recovery_attempted: bool
    checked_out_branch: str | None = None
    message: str = ""


async def git_fetch_with_retry(
    local_path: str | Path,
    log: RunLog,
    *,
    policy: RetryPolicy = FETCH_RETRY_POLICY,
    sleep: SleepFn | None = None,
) -> bool:
    """``git fetch origin --prune`` with exponential backoff; ``False`` when exhausted."""

    async def _fetch() -> bool:
        result = await _run_git(
            "fetch", "origin", "--prune", cwd=local_path, check=False, timeout_ms=FETCH_TIMEOUT_MS
        )
        if not result.success:
            raise CommandFailedError(result.stderr.strip() or f"git fetch exited {result.exit_code}")
        log.stamp("Git fetch succeeded")
        return True

    try:
        return await retry_with_policy(
            _fetch, policy, retry_on=(CommandFailedError,), sleep=sleep, description="git fetch"
        )
    except CommandFailedError as exc:
        log.stamp(f"Git fetch failed after {policy.max_retries} retries: {exc}")
        return False


def _checkout_chain(local_path: str | Path, branch: str, log: RunLog) -> StrategyChain[str]:
    async def _checkout(*args: str, lands_on: str) -> Outcome[str]:
        result = await _run_git("checkout", *args, cwd=local_path, check=False, log=log)
        if result.success:
            return Outcome.success(lands_on)
        return Outcome.soft_fail(result.stderr.strip())

    async def _local() -> Outcome[str]:
        # After a pruning fetch a missing remote ref means the branch was deleted upstream.
        if not await ref_exists(local_path, f"origin/{branch}"):
            return Outcome.soft_fail(f"origin/{branch} does not exist")
        return await _checkout(branch, lands_on=branch)

    async def _tracking() -> Outcome[str]:
        if not await ref_exists(local_path, f"origin/{branch}"):
            return Outcome.soft_fail(f"origin/{branch} does not exist")
        log.stamp(f"Checkout failed, trying to create branch from origin/{branch}")
        return await _checkout("-b", branch, f"origin/{branch}", lands_on=branch)

    def _fallback(name: str) -> Strategy[str]:
        async def _attempt() -> Outcome[str]:
            log.stamp(f"Branch {branch} not found, falling back to {name}")
            return await _checkout(name, lands_on=name)

        return Strategy(f"fallback-{name}", _attempt)

    strategies = [Strategy("checkout-local", _local), Strategy("checkout-tracking", _tracking)]
    strategies.extend(_fallback(name) for name in PROTECTED_BRANCHES if name != branch)
    return StrategyChain(f"checkout {branch}", strategies)


async def _hard_reset(local_path: str | Path, target: str, log: RunLog) -> ExecResult:
    ref = f"origin/{target}" if await ref_exists(local_path, f"origin/{target}") else "HEAD"
    return await _run_git("reset", "--hard", ref, cwd=local_path, check=False, log=log)


def _reset_chain(local_path: str | Path, target: str, log: RunLog) -> StrategyChain[str]:
    async def _reset() -> Outcome[str]:
        result = await _hard_reset(local_path, target, log)
        if result.success:
            return Outcome.success(target)
        return Outcome.soft_fail(result.stderr.strip())

    async def _clean_and_retry() -> Outcome[str]:
        log.stamp("Reset failed, attempting recovery...")
        await _run_git("clean", "-fd", cwd=local_path, check=False, log=log)
        await _run_git("checkout", "--", ".", cwd=local_path, check=False, log=log)
        result = await _hard_reset(local_path, target, log)
        if result.success:
            return Outcome.success(target)
        return Outcome.hard_fail(result.stderr.strip())

    return StrategyChain(
        f"reset {target}",
        [Strategy("reset-hard", _reset), Strategy("clean-and-reset", _clean_and_retry)],
    )


async def sync_to_branch(
    local_path: str | Path,
    branch: str,
    log: RunLog,
    *,
    fetch_policy: RetryPolicy = FETCH_RETRY_POLICY,
    sleep: SleepFn | None = None,
) -> SyncResult:
    """Bring the working tree to the remote tip of *branch*.

    Fetch is retried with backoff and aborts the sync when exhausted.  A
    branch that no longer exists upstream downgrades to main/master instead
    of failing.  A failed hard reset is retried once after discarding local
    modifications and untracked files.
    """
    if not await git_fetch_with_retry(local_path, log, policy=fetch_policy, sleep=sleep):
        return SyncResult(success=False, recovery_attempted=False, message="git fetch failed")

    checkout = await _checkout_chain(local_path, branch, log).run()
    if not checkout.ok:
        return SyncResult(
            success=False,
            recovery_attempted=True,
            message=f"Could not check out {branch} or a fallback branch",
        )
    checked_out = checkout.value or branch
    downgraded = checked_out != branch

    reset = await _reset_chain(local_path, checked_out, log).run()
    recovery = downgraded or reset.used_fallback
    if not reset.ok:
        return SyncResult(
            success=False,
            recovery_attempted=True,
            checked_out_branch=checked_out,
            message=f"Hard reset failed after recovery: {reset.outcome.detail}",
        )

    log.stamp(f"Synced to {checked_out}")
    return SyncResult(success=True, recovery_attempted=recovery, checked_out_branch=checked_out)


async def clean_orphaned_branches(local_path: str | Path, log: RunLog) -> list[str]:
    """Delete local branches whose upstream is gone; main/master are never deleted."""
    deleted: list[str] = []
    try:
        listing = await _run_git(
            "for-each-ref",
            "--format=%(refname:short) %(upstream:track)",
            "refs/heads",
            cwd=local_path,
        )
        for line in listing.stdout.splitlines():
            name, _, track = line.strip().partition(" ")
            if "[gone]" not in track or not name or name in PROTECTED_BRANCHES:
                continue
            result = await _run_git(
                "branch", "-D", name, cwd=local_path, check=False, timeout_ms=10_000
            )
            if result.success:
                deleted.append(name)
                log.stamp(f"Deleted orphaned branch: {name}")
            else:
                log.stamp(f"Could not delete orphaned branch {name}: {result.stderr.strip()}")
    except GitError as exc:
        log.stamp(f"Error cleaning orphaned branches: {exc}")
    return deleted


async def reset_to_main(local_path: str | Path, log: RunLog) -> bool:
    """Force the working tree back onto the remote tip of main (or master)."""
    await _run_git("fetch", "origin", cwd=local_path, check=False, timeout_ms=FETCH_TIMEOUT_MS)
    for name in PROTECTED_BRANCHES:
        checkout = await _run_git("checkout", name, cwd=local_path, check=False, log=log)
        if not checkout.success:
            continue
        reset = await _run_git("reset", "--hard", f"origin/{name}", cwd=local_path, check=False, log=log)
        if reset.success:
            log.stamp(f"Reset to {name} branch")
            return True
    log.stamp("Failed to reset to main")
    return False

