from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Protocol

logger = logging.getLogger("uplink.scheduler")

FlushFn = Callable[[], None]


class FlushTimer(Protocol):
    def suspend(self) -> None: ...

    def resume(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, FlushFn], FlushTimer]


class PeriodicTimer:
    """Daemon thread that calls `callback` every `interval_s` seconds.

    Ticks that fall inside a suspension are skipped, not queued.
    """

    def __init__(
        self,
        interval_s: float,
        callback: FlushFn,
        *,
        name: str = "uplink-flush-timer",
        log: logging.Logger | None = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.interval_s = float(interval_s)
        self.log = log or logger
        self._callback = callback
        self._stopped = threading.Event()
        self._suspended = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    @property
    def suspended(self) -> bool:
        return self._suspended.is_set()

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def suspend(self) -> None:
        self._suspended.set()

    def resume(self) -> None:
        self._suspended.clear()

    def cancel(self) -> None:
        self._stopped.set()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stopped.wait(self.interval_s):
            if self._suspended.is_set():
                continue
            try:
                self._callback()
            except Exception:
                self.log.exception("flush timer callback failed")


def _default_timer(interval_s: float, callback: FlushFn) -> FlushTimer:
    return PeriodicTimer(interval_s, callback)


class FlushScheduler:
    """Decides when an automatic flush happens: count threshold or timer tick."""

    def __init__(
        self,
        flush: FlushFn,
        *,
        timer_factory: TimerFactory | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.log = log or logger
        self._flush = flush
        self._timer_factory = timer_factory or _default_timer
        self._lock = threading.Lock()
        self._count = 0
        self._flush_at = 1
        self._interval_s = 0.0
        self._paused = False
        self._timer: Optional[FlushTimer] = None

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def flush_at(self) -> int:
        return self._flush_at

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def paused(self) -> bool:
        return self._paused

    def configure(self, interval_s: float, flush_at: int) -> None:
        """Replace interval and threshold; the running timer is cancelled and re-armed."""

        with self._lock:
            previous = self._timer
            self._timer = None
            self._interval_s = max(0.0, float(interval_s))
            self._flush_at = max(1, int(flush_at))
            if self._interval_s > 0:
                self._timer = self._timer_factory(self._interval_s, self._on_tick)
                if self._paused:
                    self._timer.suspend()

        if previous is not None:
            previous.cancel()
        self.log.debug("flush schedule interval=%ss flush_at=%s", self._interval_s, self._flush_at)

    def on_event_queued(self) -> None:
        with self._lock:
            self._count += 1
            due = self._count >= self._flush_at
            if due:
                self._count = 0

        # Outside the lock: flush() resets the counter itself.
        if due:
            self._flush()

    def reset_count(self) -> None:
        with self._lock:
            self._count = 0

    def pause(self) -> None:
        with self._lock:
            self._paused = True
            if self._timer is not None:
                self._timer.suspend()

    def resume(self) -> None:
        with self._lock:
            self._paused = False
            if self._timer is not None:
                self._timer.resume()

    def cancel(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _on_tick(self) -> None:
        self._flush()
