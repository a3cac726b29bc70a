from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, fn: Callable[[], None], *, name: str = "") -> TimerHandle: ...


class _ThreadingHandle:
    def __init__(self, owner: "ThreadingScheduler", key: int, timer: threading.Timer):
        self._owner = owner
        self._key = key
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()
        self._owner._forget(self._key)


class ThreadingScheduler:
    """One-shot callbacks on daemon threading.Timer threads."""

    def __init__(self, *, logger=None):
        self.logger = logger or logging.getLogger("civicportal.scheduler")
        self._lock = threading.Lock()
        self._timers: Dict[int, threading.Timer] = {}
        self._seq = 0
        self._closed = False

    def call_later(self, delay: float, fn: Callable[[], None], *, name: str = "") -> _ThreadingHandle:
        with self._lock:
            self._seq += 1
            key = self._seq

        def run() -> None:
            self._forget(key)
            try:
                fn()
            except Exception:  # noqa: BLE001
                self.logger.exception("Timer callback failed: %s", name or key)

        t = threading.Timer(max(0.0, float(delay)), run)
        t.daemon = True
        if name:
            t.name = f"timer-{name}"
        with self._lock:
            if self._closed:
                return _ThreadingHandle(self, key, t)
            self._timers[key] = t
        t.start()
        return _ThreadingHandle(self, key, t)

    def pending(self) -> int:
        with self._lock:
            return len(self._timers)

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for t in timers:
            t.cancel()

    def _forget(self, key: int) -> None:
        with self._lock:
            self._timers.pop(key, None)
