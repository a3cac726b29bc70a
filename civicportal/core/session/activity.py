from __future__ import annotations

"""
Inactivity tracking.

Two timers are armed per activity generation: a warning at
(timeout - lead) and an expiry at timeout. Each activity bumps the
generation and replaces both timers; a callback whose generation is stale
does nothing.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from civicportal.core.config.models import DEFAULT_TIMINGS, SessionTimings
from civicportal.core.session.scheduler import Scheduler, TimerHandle


ACTIVITY_SIGNALS = ("pointerdown", "keydown", "scroll", "touchstart", "click")


class ActivitySignalHub:
    def __init__(self, *, logger=None):
        self.logger = logger or logging.getLogger("civicportal.activity")
        self._lock = threading.Lock()
        self._subs: Dict[str, List[Callable[[], None]]] = {}

    def subscribe(self, signals: Iterable[str], handler: Callable[[], None]) -> Callable[[], None]:
        names = list(signals)
        with self._lock:
            for s in names:
                self._subs.setdefault(s, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                for s in names:
                    hs = self._subs.get(s, [])
                    if handler in hs:
                        hs.remove(handler)

        return unsubscribe

    def emit(self, signal: str) -> None:
        with self._lock:
            handlers = list(self._subs.get(signal, []))
        for h in handlers:
            try:
                h()
            except Exception:  # noqa: BLE001
                self.logger.exception("Activity handler failed for %s", signal)

    def subscriber_count(self, signal: str) -> int:
        with self._lock:
            return len(self._subs.get(signal, []))


@dataclass
class TimerPair:
    generation: int
    warning_deadline: float
    expiry_deadline: float
    warning_handle: Optional[TimerHandle] = field(default=None, repr=False)
    expiry_handle: Optional[TimerHandle] = field(default=None, repr=False)

    def cancel(self) -> None:
        for h in (self.warning_handle, self.expiry_handle):
            if h is not None:
                h.cancel()


class ActivityTracker:
    def __init__(
        self,
        timings: SessionTimings = DEFAULT_TIMINGS,
        scheduler: Optional[Scheduler] = None,
        *,
        signals: Optional[ActivitySignalHub] = None,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        if scheduler is None:
            from civicportal.core.session.scheduler import ThreadingScheduler

            scheduler = ThreadingScheduler()
        self.timings = timings
        self.scheduler = scheduler
        self.signals = signals or ActivitySignalHub()
        self.clock = clock
        self.logger = logger or logging.getLogger("civicportal.activity")

        self._lock = threading.RLock()
        self._tracking = False
        self._generation = 0
        self._timers: Optional[TimerPair] = None
        self._session_start: Optional[float] = None
        self._last_activity: Optional[float] = None
        self._expired = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._on_expiry: Optional[Callable[[], None]] = None
        self._on_warning: Optional[Callable[[], None]] = None
        self._on_activity: Optional[Callable[[], None]] = None

    @property
    def is_tracking(self) -> bool:
        with self._lock:
            return self._tracking

    @property
    def last_activity(self) -> Optional[float]:
        with self._lock:
            return self._last_activity

    @property
    def session_start(self) -> Optional[float]:
        with self._lock:
            return self._session_start

    def current_timers(self) -> Optional[TimerPair]:
        with self._lock:
            return self._timers

    def start_tracking(
        self,
        on_expiry: Callable[[], None],
        on_warning: Callable[[], None],
        on_activity: Optional[Callable[[], None]] = None,
    ) -> None:
        with self._lock:
            now = float(self.clock())
            self._on_expiry = on_expiry
            self._on_warning = on_warning
            self._on_activity = on_activity
            self._session_start = now
            self._last_activity = now
            self._expired = False
            self._tracking = True
            if self._unsubscribe is None:
                self._unsubscribe = self.signals.subscribe(ACTIVITY_SIGNALS, self.record_activity)
            self._rearm_locked()
        self.logger.debug("Activity tracking started")

    def record_activity(self) -> None:
        with self._lock:
            now = float(self.clock())
            self._last_activity = now if self._last_activity is None else max(self._last_activity, now)
            if not self._tracking or self._expired:
                return
            self._rearm_locked()
            cb = self._on_activity
        if cb is not None:
            cb()

    def stop_tracking(self) -> None:
        with self._lock:
            if not self._tracking and self._timers is None and self._unsubscribe is None:
                return
            self._tracking = False
            self._generation += 1
            if self._timers is not None:
                self._timers.cancel()
                self._timers = None
            unsub, self._unsubscribe = self._unsubscribe, None
            self._on_expiry = self._on_warning = self._on_activity = None
        if unsub is not None:
            unsub()
        self.logger.debug("Activity tracking stopped")

    def seconds_until_expiry(self) -> int:
        with self._lock:
            if self._last_activity is None:
                return 0
            remaining = self._last_activity + self.timings.inactivity_timeout_seconds - float(self.clock())
        return max(0, math.floor(remaining))

    def session_duration_seconds(self) -> int:
        with self._lock:
            if self._session_start is None:
                return 0
            return max(0, math.floor(float(self.clock()) - self._session_start))

    def _rearm_locked(self) -> None:
        if self._timers is not None:
            self._timers.cancel()
        self._generation += 1
        gen = self._generation
        base = self._last_activity if self._last_activity is not None else float(self.clock())
        pair = TimerPair(
            generation=gen,
            warning_deadline=base + self.timings.warning_after_seconds,
            expiry_deadline=base + self.timings.inactivity_timeout_seconds,
        )
        now = float(self.clock())
        pair.warning_handle = self.scheduler.call_later(
            max(0.0, pair.warning_deadline - now), lambda: self._fire_warning(gen), name="session-warning"
        )
        pair.expiry_handle = self.scheduler.call_later(
            max(0.0, pair.expiry_deadline - now), lambda: self._fire_expiry(gen), name="session-expiry"
        )
        self._timers = pair

    def _fire_warning(self, gen: int) -> None:
        with self._lock:
            if not self._tracking or gen != self._generation or self._expired:
                return
            cb = self._on_warning
        if cb is not None:
            cb()

    def _fire_expiry(self, gen: int) -> None:
        with self._lock:
            if not self._tracking or gen != self._generation or self._expired:
                return
            self._expired = True
            self._timers = None
            cb = self._on_expiry
        self.logger.info("Session inactive for %ss", int(self.timings.inactivity_timeout_seconds))
        if cb is not None:
            cb()
