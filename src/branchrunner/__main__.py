"""CLI entrypoint for BranchRunner."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from branchrunner.build_cache import BuildCache
from branchrunner.build_queue import BuildQueue
from branchrunner.config import RunnerSettings
from branchrunner.git_tools import clean_orphaned_branches, clone_repo, reset_to_main, sync_to_branch
from branchrunner.notifier import notifier_from_settings
from branchrunner.port_detection import detect_port_dynamically, detect_port_static
from branchrunner.run_log import RunLog
from branchrunner.runner import JobRunner
from branchrunner.schemas import BuildJob, ProfileKind, RepoConfig, RunStatus
from branchrunner.screenshot_diff import diff as diff_screenshots
from branchrunner.store import JsonConfigStore


def _load_dotenv() -> None:
    """Load .env from cwd, its parent, or the project root."""
    project_root = Path(__file__).resolve().parent.parent.parent  # src/branchrunner/__main__.py
    for dir_ in (Path.cwd(), Path.cwd().parent, project_root):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _cli_log(settings: RunnerSettings) -> RunLog:
    return RunLog(settings.logs_root / "cli.log")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="branchrunner",
        description="BranchRunner - build, run and screenshot every pushed branch.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (DEBUG) logging.")
    sub = p.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Build one branch of a configured repository now.")
    run_p.add_argument("repo", help="owner/repo")
    run_p.add_argument("branch")
    run_p.add_argument(
        "--profile",
        choices=[kind.value for kind in ProfileKind],
        help="Register the repository with this profile if it is not configured yet.",
    )
    run_p.add_argument("--local-path", default="", help="Existing working tree to use when registering.")

    clone_p = sub.add_parser("clone", help="Clone a repository into the working area.")
    clone_p.add_argument("repo", help="owner/repo")

    sync_p = sub.add_parser("sync", help="Sync a working tree to the remote tip of a branch.")
    sync_p.add_argument("path")
    sync_p.add_argument("branch")

    reset_p = sub.add_parser("reset-main", help="Force a working tree back to main/master.")
    reset_p.add_argument("path")

    clean_p = sub.add_parser("clean-branches", help="Delete local branches whose upstream is gone.")
    clean_p.add_argument("path")

    port_p = sub.add_parser("detect-port", help="Infer the dev-server port of a working tree.")
    port_p.add_argument("path")
    port_p.add_argument("--dynamic", action="store_true", help="Start the dev server and read its URL.")
    port_p.add_argument("--timeout-ms", type=int, default=30_000)

    diff_p = sub.add_parser("diff", help="Compare two screenshots.")
    diff_p.add_argument("current")
    diff_p.add_argument("previous")
    diff_p.add_argument("output", help="Where to write the diff image.")

    cache_p = sub.add_parser("cache", help="Inspect or prune the dependency cache.")
    cache_sub = cache_p.add_subparsers(dest="cache_command")
    cache_sub.add_parser("stats", help="Show cache usage per repository.")
    cache_clear = cache_sub.add_parser("clear", help="Drop the cache of one repository.")
    cache_clear.add_argument("repo")
    cache_clean = cache_sub.add_parser("clean", help="Drop cache entries older than N days.")
    cache_clean.add_argument("--max-age-days", type=int, default=30)
    return p


async def _run_build(args: argparse.Namespace, settings: RunnerSettings) -> int:
    store = JsonConfigStore(settings.store_path)
    if store.get_repo_config(args.repo) is None:
        if not args.profile:
            print(f"{args.repo} is not configured; pass --profile to register it.", file=sys.stderr)
            return 1
        store.add_repo_config(
            RepoConfig(repo_full_name=args.repo, profile=ProfileKind(args.profile), local_path=args.local_path)
        )

    runner = JobRunner(settings, store, notifier_from_settings(settings))
    if not runner.should_accept(args.repo, args.branch):
        print(f"{args.repo} is disabled or paused; nothing to do.", file=sys.stderr)
        return 1

    results: list[Any] = []

    async def _execute(job: BuildJob) -> None:
        results.append(await runner.execute(job))

    queue = BuildQueue(_execute, max_workers=settings.max_workers)
    queue.enqueue(BuildJob(repo_full_name=args.repo, branch=args.branch, trigger="manual"))
    await queue.join()

    record = results[0] if results else None
    if record is None:
        return 1
    _print_json(record.model_dump(exclude_none=True))
    return 0 if record.status == RunStatus.SUCCESS else 1


async def _run_clone(args: argparse.Namespace, settings: RunnerSettings) -> int:
    result = await clone_repo(args.repo, settings)
    _print_json({"success": result.success, "local_path": result.local_path, "message": result.message})
    return 0 if result.success else 1


async def _run_sync(args: argparse.Namespace, settings: RunnerSettings) -> int:
    result = await sync_to_branch(args.path, args.branch, _cli_log(settings))
    _print_json(
        {
            "success": result.success,
            "recovery_attempted": result.recovery_attempted,
            "checked_out_branch": result.checked_out_branch,
            "message": result.message,
        }
    )
    return 0 if result.success else 1


async def _run_detect_port(args: argparse.Namespace, settings: RunnerSettings) -> int:
    if args.dynamic:
        result = await detect_port_dynamically(args.path, _cli_log(settings), args.timeout_ms)
    else:
        result = detect_port_static(args.path)
    if result is None:
        print("No port detected.", file=sys.stderr)
        return 1
    _print_json(result.model_dump())
    return 0


async def _run_diff(args: argparse.Namespace) -> int:
    result = await diff_screenshots(args.current, args.previous, args.output)
    if result is None:
        print("Screenshots could not be compared.", file=sys.stderr)
        return 1
    _print_json(result.model_dump())
    return 0


def _run_cache(args: argparse.Namespace, settings: RunnerSettings) -> int:
    cache = BuildCache.from_settings(settings)
    if args.cache_command == "clear":
        return 0 if cache.clear(args.repo) else 1
    if args.cache_command == "clean":
        _print_json({"deleted": cache.clean_old(args.max_age_days)})
        return 0
    _print_json(cache.stats().model_dump())
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the requested command."""
    _load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    settings = RunnerSettings.from_env()

    if args.command == "run":
        return asyncio.run(_run_build(args, settings))
    if args.command == "clone":
        return asyncio.run(_run_clone(args, settings))
    if args.command == "sync":
        return asyncio.run(_run_sync(args, settings))
    if args.command == "reset-main":
        return 0 if asyncio.run(reset_to_main(args.path, _cli_log(settings))) else 1
    if args.command == "clean-branches":
        _print_json({"deleted": asyncio.run(clean_orphaned_branches(args.path, _cli_log(settings)))})
        return 0
    if args.command == "detect-port":
        return asyncio.run(_run_detect_port(args, settings))
    if args.command == "diff":
        return asyncio.run(_run_diff(args))
    if args.command == "cache":
        return _run_cache(args, settings)

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
