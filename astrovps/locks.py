"""Run lock and deferred cleanup for astroneer-vps."""

from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from astrovps.constants import LOCK_FILE
from astrovps.exceptions import LockBusy
from astrovps.utils import log


class RunLock:
    """Machine-wide advisory lock held for one top-level invocation."""

    def __init__(self, path: Path = LOCK_FILE) -> None:
        self.path = path
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise LockBusy(
                f"Another astrovps operation holds {self.path}",
                remediation="Wait for it to finish, then retry.",
            )
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        self._fd = fd
        log("DEBUG", f"Acquired lock {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        log("DEBUG", f"Released lock {self.path}")

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class CleanupRegistry:
    """Deferred actions executed in reverse registration order."""

    def __init__(self) -> None:
        self._actions: List[Tuple[str, Callable[[], None]]] = []

    def register(self, action: Callable[[], None], description: str = "cleanup") -> None:
        self._actions.append((description, action))

    def __len__(self) -> int:
        return len(self._actions)

    def run_all(self) -> None:
        """Run every action; a failing action is logged and the rest still run."""
        while self._actions:
            description, action = self._actions.pop()
            log("DEBUG", f"Cleanup: {description}")
            try:
                action()
            except Exception as exc:
                log("WARN", f"Cleanup step '{description}' failed: {exc}")
