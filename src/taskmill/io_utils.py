"""Inter-process locking and atomic replacement for the mill's state files."""

from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import Any, Callable, Optional


class FileLock:
    """Exclusive ``flock`` on a dedicated lock file, held for a ``with`` block.

    The ledger, backlog, and event log each pair their data file with a lock
    file so that a mill run and the API server never interleave writes.
    Locks are not reentrant: nesting two blocks on the same path deadlocks.
    """

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path
        self._fd: Optional[int] = None

    def __enter__(self) -> "FileLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError:
            os.close(fd)
            raise
        self._fd = fd
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def atomic_write(path: Path, write: Callable[[Any], None]) -> None:
    """Write ``path`` through a sibling temp file and swap it in with ``os.replace``.

    Readers never observe a partially written file: they either see the previous
    content or the complete new content.

    Args:
        path (Path): Destination file.
        write (Callable[[Any], None]): Callback receiving the open text handle.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(f"{path.suffix}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        write(handle)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)
