"""Coalescing build queue.

Jobs are keyed by ``(repo_full_name, branch)``.  A new job for a key that is
still waiting replaces the waiting one in place.  Every branch of a repository
shares one checkout, so at most one job per repository runs at a time; jobs
for different repositories run concurrently up to ``max_workers``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any

from branchrunner.schemas import BuildJob

logger = logging.getLogger(__name__)

JobKey = tuple[str, str]
JobExecutor = Callable[[BuildJob], Awaitable[Any]]


class BuildQueue:
    """In-process job queue driven by the running event loop."""

    def __init__(self, executor: JobExecutor, max_workers: int = 1) -> None:
        self._executor = executor
        self.max_workers = max(1, int(max_workers))
        self._pending: OrderedDict[JobKey, BuildJob] = OrderedDict()
        self._running: dict[JobKey, BuildJob] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._idle: asyncio.Event | None = None

    def _idle_event(self) -> asyncio.Event:
        if self._idle is None:
            self._idle = asyncio.Event()
            self._idle.set()
        return self._idle

    # -- submission --

    def enqueue(self, job: BuildJob) -> None:
        """Queue *job* and start it as soon as its key and a worker are free.

        Must be called from within the event loop.
        """
        key = job.key
        if key in self._pending:
            logger.info("Replacing existing queued job for %s/%s", *key)
            self._pending[key] = job
        else:
            self._pending[key] = job
            logger.info("Enqueued job for %s/%s, queue length: %d", *key, len(self._pending))
        self._idle_event().clear()
        self._dispatch()

    def _dispatch(self) -> None:
        while len(self._running) < self.max_workers:
            busy_repos = {repo for repo, _branch in self._running}
            key = next((k for k in self._pending if k[0] not in busy_repos), None)
            if key is None:
                break
            job = self._pending.pop(key)
            self._running[key] = job
            task = asyncio.get_running_loop().create_task(self._run(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        if not self._pending and not self._running:
            self._idle_event().set()

    async def _run(self, job: BuildJob) -> None:
        key = job.key
        logger.info("Processing job for %s/%s, remaining: %d", *key, len(self._pending))
        try:
            await self._executor(job)
            logger.info("Completed job for %s/%s", *key)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Job failed for %s/%s", *key)
        finally:
            self._running.pop(key, None)
            self._dispatch()
            if not self._pending and not self._running:
                logger.info("Queue empty, stopping processor")

    # -- introspection --

    @property
    def queue_length(self) -> int:
        return len(self._pending)

    @property
    def queued_jobs(self) -> list[BuildJob]:
        return list(self._pending.values())

    @property
    def running_jobs(self) -> list[BuildJob]:
        return list(self._running.values())

    @property
    def is_processing(self) -> bool:
        return bool(self._running)

    def status(self) -> dict[str, Any]:
        return {
            "queue_length": self.queue_length,
            "is_processing": self.is_processing,
            "max_workers": self.max_workers,
            "running_jobs": [job.model_dump() for job in self.running_jobs],
            "queued_jobs": [job.model_dump() for job in self.queued_jobs],
        }

    # -- control --

    def remove(self, repo_full_name: str, branch: str) -> bool:
        """Drop a waiting job; running jobs are not affected."""
        if self._pending.pop((repo_full_name, branch), None) is None:
            return False
        logger.info("Removed %s/%s from queue", repo_full_name, branch)
        if not self._pending and not self._running:
            self._idle_event().set()
        return True

    def clear(self) -> int:
        count = len(self._pending)
        self._pending.clear()
        logger.warning("Cleared %d jobs from queue", count)
        if not self._running:
            self._idle_event().set()
        return count

    async def join(self) -> None:
        """Wait until nothing is queued or running."""
        await self._idle_event().wait()
