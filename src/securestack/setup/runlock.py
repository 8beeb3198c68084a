"""Exclusive per-host run lock."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from types import TracebackType

import psutil

from ..errors import RunLockError

logger = logging.getLogger(__name__)


class RunLock:
    """Hold ``path`` exclusively for the duration of a run.

    The lock file stores the owning pid. A lock left behind by a process
    that no longer exists is reclaimed.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def owner(self) -> int | None:
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise RunLockError(f"Cannot read run lock {self.path}: {exc}") from exc
        return int(text) if text.isdigit() else None

    def _create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{os.getpid()}\n")
        return True

    def acquire(self) -> "RunLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self._create():
            self._held = True
            return self
        pid = self.owner()
        if pid is not None and pid != os.getpid() and psutil.pid_exists(pid):
            raise RunLockError(f"Another provisioning run (pid {pid}) holds {self.path}")
        logger.warning("Reclaiming stale run lock %s (pid %s)", self.path, pid)
        self.path.unlink(missing_ok=True)
        if not self._create():
            raise RunLockError(f"Could not acquire run lock {self.path}")
        self._held = True
        return self

    def release(self) -> None:
        if not self._held:
            return
        try:
            if self.owner() == os.getpid():
                self.path.unlink(missing_ok=True)
        finally:
            self._held = False

    def __enter__(self) -> "RunLock":
        return self.acquire()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


__all__ = ["RunLock"]
