"""Atomic writes for persisted documents and serialized appends for run logs.

Every run opens fresh log files, so the per-path lock registry holds its
locks weakly: an entry disappears once no writer is using it.
"""

from __future__ import annotations

import os
import tempfile
import threading
import weakref
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

from pydantic import BaseModel

_LOCKS_GUARD = threading.Lock()
_LOCKS: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()


def _lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _LOCKS_GUARD:
        lock = _LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _LOCKS[key] = lock
    return lock


def tracked_lock_count() -> int:
    """Number of paths that currently have a live lock."""
    with _LOCKS_GUARD:
        return len(_LOCKS)


@contextmanager
def locked_path(path: Path) -> Iterator[None]:
    """Serialize writers of *path* within this process."""
    lock = _lock_for(path)
    with lock:
        yield


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Replace *path* with *content*; readers see the old or the new file, never a mix."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
        with locked_path(path):
            tmp_path.replace(path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def write_model_json(path: Path, model: BaseModel, *, exclude_none: bool = False) -> None:
    """Persist a pydantic model as indented JSON via :func:`atomic_write_text`."""
    atomic_write_text(path, model.model_dump_json(indent=2, exclude_none=exclude_none))


def append_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with locked_path(path), path.open("a", encoding=encoding) as handle:
        handle.write(content)
