from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from .storage import BatchHandle

logger = logging.getLogger("uplink.registry")

CleanupFn = Callable[[], None]


class UploadHandle(Protocol):
    """The underlying network operation of one upload."""

    def is_running(self) -> bool: ...


@dataclass
class UploadTask:
    batch: BatchHandle
    handle: UploadHandle
    cleanup: Optional[CleanupFn] = None


class UploadRegistry:
    """In-flight uploads, guarded by one re-entrant critical section.

    Called from the flush path and from transport completion threads.
    A task leaves the registry only through `sweep`, which is what makes its
    cleanup run at most once no matter which path retires it.
    """

    def __init__(self, *, log: logging.Logger | None = None) -> None:
        self.log = log or logger
        self._lock = threading.RLock()
        self._tasks: List[UploadTask] = []

    def add(self, task: UploadTask) -> None:
        with self._lock:
            self._tasks.append(task)

    def count(self) -> int:
        with self._lock:
            return len(self._tasks)

    def tasks(self) -> List[UploadTask]:
        with self._lock:
            return list(self._tasks)

    def running(self) -> int:
        """Number of tasks whose operation is still running; retires nothing."""

        with self._lock:
            return sum(1 for task in self._tasks if self._is_running(task))

    def sweep(self) -> int:
        """Retire every task whose operation is no longer running.

        Covers normal completion as well as operations that stopped without
        ever reporting back. Returns the number of retired tasks.
        """

        with self._lock:
            kept: List[UploadTask] = []
            retired: List[UploadTask] = []
            for task in self._tasks:
                if self._is_running(task):
                    kept.append(task)
                else:
                    retired.append(task)
            self._tasks = kept

            for task in retired:
                if task.cleanup is None:
                    continue
                try:
                    task.cleanup()
                except Exception:
                    self.log.exception("cleanup failed for %s", task.batch.label)

        if retired:
            self.log.debug("cleaned up %s non-running uploads (in_flight=%s)", len(retired), len(kept))
        return len(retired)

    def _is_running(self, task: UploadTask) -> bool:
        try:
            return bool(task.handle.is_running())
        except Exception:
            # An unqueryable handle can never finish from our point of view.
            self.log.exception("upload handle state unavailable for %s; retiring", task.batch.label)
            return False
