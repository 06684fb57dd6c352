"""Deadline-bounded subprocess execution and process-tree termination.

Every external command the pipeline runs (git, package managers, simulator
tooling, image tools) goes through this module.  Children are started in a
new session so the whole tree they spawn shares one process group, which is
what gets signalled when a deadline passes or a long-running process is
stopped.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import signal
import subprocess
from collections import deque
from collections.abc import Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MAX_BUFFER_BYTES = 50 * 1024 * 1024
KILL_GRACE_SECONDS = 2.0
_READ_CHUNK_BYTES = 64 * 1024
_REAP_TIMEOUT_SECONDS = 5.0
_DRAIN_TIMEOUT_SECONDS = 1.0
_RECENT_OUTPUT_CHUNKS = 400

_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)

OutputCallback = Callable[[str, str], None]


def _process_isolation_kwargs() -> dict[str, object]:
    """Return subprocess kwargs that give the child its own process group.

    On POSIX a new session makes the child a group leader, so ``killpg`` on
    its pid reaches every descendant that did not detach itself.  On Windows
    CREATE_NEW_PROCESS_GROUP keeps console events aimed at the runner away
    from the child.
    """
    if os.name == "nt":
        new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        return {"creationflags": new_pg} if new_pg else {}
    return {"start_new_session": True}


def _merged_env(env: Mapping[str, str] | None) -> dict[str, str]:
    merged = dict(os.environ)
    if env:
        merged.update({str(k): str(v) for k, v in env.items()})
    return merged


def which(binary: str) -> str | None:
    """Return the absolute path of *binary* on ``PATH`` or ``None``."""
    return shutil.which(binary)


async def sleep_ms(milliseconds: int | float) -> None:
    await asyncio.sleep(max(0.0, float(milliseconds)) / 1000.0)


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


def kill_process_tree(pid: int | None, sig: int = signal.SIGTERM) -> bool:
    """Signal the process group led by *pid*, falling back to the single process.

    Returns ``True`` when a signal was delivered to something.
    """
    pid = int(pid or 0)
    if pid <= 0:
        return False
    if os.name != "nt":
        try:
            os.killpg(pid, sig)
            return True
        except ProcessLookupError:
            return False
        except OSError as exc:
            logger.debug("Group kill of %s failed (%s); signalling the process only", pid, exc)
    try:
        os.kill(pid, sig)
        return True
    except OSError:
        return False


async def terminate_process_tree(
    proc: asyncio.subprocess.Process,
    *,
    grace_seconds: float = KILL_GRACE_SECONDS,
) -> None:
    """SIGTERM the process group, then SIGKILL it after the grace window."""
    kill_process_tree(proc.pid, signal.SIGTERM)
    if proc.returncode is None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=max(0.0, grace_seconds))
        except asyncio.TimeoutError:
            logger.warning("Process %s ignored SIGTERM for %.1fs; forcing kill", proc.pid, grace_seconds)
    # Descendants may outlive the leader; the group is killed either way.
    kill_process_tree(proc.pid, _SIGKILL)
    if proc.returncode is None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=_REAP_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:  # pragma: no cover - extreme edge case
            logger.warning("Process %s ignored SIGKILL", proc.pid)


# ---------------------------------------------------------------------------
# Bounded execution
# ---------------------------------------------------------------------------


class _CappedBuffer:
    """Byte accumulator that stops growing at *limit* and remembers it did."""

    def __init__(self, limit: int) -> None:
        self.limit = max(1, int(limit))
        self._chunks: list[bytes] = []
        self.size = 0
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        if not chunk:
            return
        room = self.limit - self.size
        if room <= 0:
            self.truncated = True
            return
        if len(chunk) > room:
            chunk = chunk[:room]
            self.truncated = True
        self._chunks.append(chunk)
        self.size += len(chunk)

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


async def _drain(stream: asyncio.StreamReader | None, sink: _CappedBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        sink.feed(chunk)


@dataclass(slots=True)
class ExecResult:
    """Captured output and exit metadata of a bounded command."""

    success: bool
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool
    truncated: bool = False

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


async def run_with_timeout(
    command: str,
    cwd: str | Path,
    timeout_ms: int,
    env: Mapping[str, str] | None = None,
    *,
    max_buffer_bytes: int = MAX_BUFFER_BYTES,
) -> ExecResult:
    """Run *command* through the shell, bounded by *timeout_ms* of wall time.

    On deadline the process group is terminated (SIGTERM, then SIGKILL after
    the grace window) and ``timed_out`` is set.  Output beyond
    *max_buffer_bytes* per stream is dropped and ``truncated`` is set.
    """
    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_merged_env(env),
            **_process_isolation_kwargs(),
        )
    except OSError as exc:
        logger.warning("Could not start `%s` in %s: %s", command, cwd, exc)
        return ExecResult(success=False, stdout="", stderr=str(exc), exit_code=None, timed_out=False)

    stdout_buf = _CappedBuffer(max_buffer_bytes)
    stderr_buf = _CappedBuffer(max_buffer_bytes)
    timed_out = False
    try:
        await asyncio.wait_for(
            asyncio.gather(
                _drain(proc.stdout, stdout_buf),
                _drain(proc.stderr, stderr_buf),
                proc.wait(),
            ),
            timeout=max(0.001, timeout_ms / 1000.0),
        )
    except asyncio.TimeoutError:
        timed_out = True
        logger.warning("`%s` timed out after %sms; terminating process group", command, timeout_ms)
        await terminate_process_tree(proc)
    except asyncio.CancelledError:
        await terminate_process_tree(proc)
        raise

    truncated = stdout_buf.truncated or stderr_buf.truncated
    if truncated:
        logger.warning("`%s` produced more than %s bytes; output truncated", command, max_buffer_bytes)

    exit_code = proc.returncode
    stderr = stderr_buf.text()
    if timed_out and not stderr.strip():
        stderr = f"Command timed out after {timeout_ms}ms"
    return ExecResult(
        success=(not timed_out and exit_code == 0),
        stdout=stdout_buf.text(),
        stderr=stderr,
        exit_code=exit_code,
        timed_out=timed_out,
        truncated=truncated,
    )


# ---------------------------------------------------------------------------
# Long-running processes
# ---------------------------------------------------------------------------


class LongRunningProcess:
    """Handle to a detached process whose output is streamed while it runs.

    The handle owns the process tree: ``kill()`` (or leaving an ``async with``
    block) terminates every descendant in its process group.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        *,
        command_line: str,
        on_output: OutputCallback | None = None,
    ) -> None:
        self.proc = proc
        self.command_line = command_line
        self._on_output = on_output
        self._recent: deque[str] = deque(maxlen=_RECENT_OUTPUT_CHUNKS)
        self._killed = False
        self._readers = [
            asyncio.create_task(self._pump("stdout", proc.stdout)),
            asyncio.create_task(self._pump("stderr", proc.stderr)),
        ]
        self._watchdog: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int:
        return int(self.proc.pid)

    @property
    def returncode(self) -> int | None:
        return self.proc.returncode

    @property
    def recent_output(self) -> str:
        return "".join(self._recent)

    async def _pump(self, stream_name: str, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                return
            text = chunk.decode("utf-8", errors="replace")
            self._recent.append(text)
            if self._on_output is not None:
                try:
                    self._on_output(stream_name, text)
                except Exception:  # pragma: no cover - callback isolation
                    logger.exception("Output callback for `%s` raised", self.command_line)

    def _arm_deadline(self, timeout_ms: int) -> None:
        async def _expire() -> None:
            await sleep_ms(timeout_ms)
            logger.warning("`%s` exceeded %sms; terminating", self.command_line, timeout_ms)
            await self.kill()

        self._watchdog = asyncio.create_task(_expire())

    async def wait_for_exit(self) -> int:
        """Wait until the process exits and its output has been consumed."""
        code = await self.proc.wait()
        await self._finish_readers()
        return code if code is not None else 1

    async def kill(self) -> None:
        """Terminate the process group; safe to call more than once."""
        if self._watchdog is not None and self._watchdog is not asyncio.current_task():
            self._watchdog.cancel()
        if self._killed:
            return
        self._killed = True
        await terminate_process_tree(self.proc)
        await self._finish_readers()

    async def _finish_readers(self) -> None:
        pending = [task for task in self._readers if not task.done()]
        if not pending:
            return
        _done, still_pending = await asyncio.wait(pending, timeout=_DRAIN_TIMEOUT_SECONDS)
        for task in still_pending:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def __aenter__(self) -> LongRunningProcess:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.kill()


async def spawn_long_running(
    command: str,
    args: list[str] | tuple[str, ...] = (),
    cwd: str | Path = ".",
    env: Mapping[str, str] | None = None,
    *,
    on_output: OutputCallback | None = None,
    timeout_ms: int | None = None,
) -> LongRunningProcess:
    """Start ``command args...`` detached in its own process group.

    stdout/stderr chunks are passed to *on_output* as ``(stream_name, text)``.
    When *timeout_ms* is given the process tree is killed once it elapses.
    """
    command_line = shlex.join([command, *args]) if args else command
    logger.debug("spawn %s (cwd=%s)", command_line, cwd)
    proc = await asyncio.create_subprocess_shell(
        command_line,
        cwd=str(cwd),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=_merged_env(env),
        **_process_isolation_kwargs(),
    )
    handle = LongRunningProcess(proc, command_line=command_line, on_output=on_output)
    if timeout_ms is not None and timeout_ms > 0:
        handle._arm_deadline(timeout_ms)
    return handle


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


async def _pids_listening_on(port: int) -> list[int]:
    result = await run_with_timeout(f"lsof -ti:{int(port)}", ".", 10_000)
    pids: list[int] = []
    for token in result.stdout.split():
        with suppress(ValueError):
            pids.append(int(token))
    return pids


async def kill_process_on_port(port: int) -> list[int]:
    """Force-kill every process holding *port*; returns the pids signalled."""
    if which("lsof") is None:
        logger.debug("lsof unavailable; cannot reclaim port %s", port)
        return []
    killed: list[int] = []
    for pid in await _pids_listening_on(port):
        if pid == os.getpid():
            continue
        with suppress(OSError):
            os.kill(pid, _SIGKILL)
            killed.append(pid)
    if killed:
        logger.info("Reclaimed port %s from pid(s) %s", port, ", ".join(map(str, killed)))
    return killed


async def wait_for_port(port: int, timeout_ms: int, check_interval_ms: int = 500) -> bool:
    """Poll until something listens on *port* or the deadline passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000.0
    while loop.time() < deadline:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection("127.0.0.1", int(port)),
                timeout=max(0.1, check_interval_ms / 1000.0),
            )
        except (OSError, asyncio.TimeoutError):
            await sleep_ms(check_interval_ms)
            continue
        writer.close()
        with suppress(Exception):
            await writer.wait_closed()
        return True
    return False
