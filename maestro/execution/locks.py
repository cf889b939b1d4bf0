"""Per-file locks held for the lifetime of one task.

Two layers: an in-process registry catches sibling tasks in the same run, and
an OS-level ``filelock`` catches other processes. Acquisition never waits; a
path that is already held fails the task immediately.
"""

import hashlib
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout
from loguru import logger

from maestro.core.errors import LockConflictError


def normalize_path(path: str) -> str:
    """Canonical form of a task file path for lock identity."""
    return os.path.normcase(os.path.abspath(os.path.expanduser(path)))


class FileLockManager:
    """
    Fail-fast file locks keyed by normalized path.

    Example:
        >>> locks = FileLockManager(".maestro/locks")
        >>> with locks.hold("3", ["app/models.py"]):
        ...     await run_task()
    """

    def __init__(self, lock_dir: str | Path) -> None:
        self.lock_dir = Path(lock_dir)
        self._held: dict[str, tuple[str, FileLock]] = {}

    def _lock_file(self, path: str) -> Path:
        digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:24]
        return self.lock_dir / f"{digest}.lock"

    def owner(self, path: str) -> str | None:
        """Task key currently holding a path in this process."""
        held = self._held.get(normalize_path(path))
        return held[0] if held else None

    def held_paths(self) -> dict[str, str]:
        """Map of normalized path -> owning task key."""
        return {path: owner for path, (owner, _) in self._held.items()}

    def acquire(self, task_key: str, paths: list[str]) -> list[str]:
        """
        Lock every path for a task, all or nothing.

        Args:
            task_key: Owning task.
            paths: File paths the task touches.

        Returns:
            Normalized paths now held.

        Raises:
            LockConflictError: If any path is held by another task or process.
        """
        wanted = sorted({normalize_path(p) for p in paths})
        if not wanted:
            return []

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        acquired: list[str] = []

        for path in wanted:
            held = self._held.get(path)
            if held is not None:
                self._release_paths(acquired)
                logger.warning(f"Lock conflict on {path}: held by task {held[0]}")
                raise LockConflictError(task_key, path)

            lock = FileLock(str(self._lock_file(path)), timeout=0)
            try:
                lock.acquire()
            except Timeout:
                self._release_paths(acquired)
                logger.warning(f"Lock conflict on {path}: held by another process")
                raise LockConflictError(task_key, path) from None

            self._held[path] = (task_key, lock)
            acquired.append(path)

        logger.debug(f"Task {task_key} locked {len(acquired)} files")
        return acquired

    def release(self, task_key: str) -> int:
        """Release every path held by a task. Returns the number released."""
        owned = [path for path, (owner, _) in self._held.items() if owner == task_key]
        self._release_paths(owned)
        return len(owned)

    def release_all(self) -> None:
        self._release_paths(list(self._held))

    def _release_paths(self, paths: list[str]) -> None:
        for path in paths:
            held = self._held.pop(path, None)
            if held is None:
                continue
            try:
                held[1].release()
            except OSError as e:
                logger.warning(f"Failed to release lock for {path}: {e}")

    @contextmanager
    def hold(self, task_key: str, paths: list[str]) -> Iterator[list[str]]:
        """Hold locks for the duration of a block, releasing on every exit path."""
        acquired = self.acquire(task_key, paths)
        try:
            yield acquired
        finally:
            self._release_paths(acquired)
