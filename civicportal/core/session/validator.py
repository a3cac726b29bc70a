from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Callable, Optional

from civicportal.core.config.models import DEFAULT_TIMINGS, SessionTimings
from civicportal.core.identity.interfaces import IdentityAuthority
from civicportal.core.session.scheduler import Scheduler, TimerHandle


class SessionValidator:
    """
    Periodic credential re-validation.

    Every validation_interval_seconds the next tick is armed first, then a
    forced refresh is submitted to the executor. A refresh still running when
    the next tick arrives does not delay it. Results that land after
    stop_validation() (or after a re-arm) are dropped.
    """

    def __init__(
        self,
        authority: IdentityAuthority,
        timings: SessionTimings = DEFAULT_TIMINGS,
        scheduler: Optional[Scheduler] = None,
        *,
        executor: Optional[Executor] = None,
        logger=None,
    ):
        if scheduler is None:
            from civicportal.core.session.scheduler import ThreadingScheduler

            scheduler = ThreadingScheduler()
        self.authority = authority
        self.timings = timings
        self.scheduler = scheduler
        self.logger = logger or logging.getLogger("civicportal.validator")
        self._owns_executor = executor is None
        self._executor: Executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="session-validate")

        self._lock = threading.Lock()
        self._generation = 0
        self._handle: Optional[TimerHandle] = None
        self._on_invalid: Optional[Callable[[], None]] = None
        self._closed = False

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._handle is not None

    def validate_session(self) -> bool:
        try:
            if self.authority.current_principal() is None:
                return False
            return bool(self.authority.force_refresh())
        except Exception as e:  # noqa: BLE001
            self.logger.warning("Session validation failed: %s", e)
            return False

    def start_validation(self, on_invalid: Callable[[], None]) -> None:
        with self._lock:
            if self._closed:
                return
            if self._handle is not None:
                self._handle.cancel()
            self._generation += 1
            self._on_invalid = on_invalid
            self._arm_locked(self._generation)

    def stop_validation(self) -> None:
        with self._lock:
            self._generation += 1
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None
            self._on_invalid = None

    def close(self) -> None:
        self.stop_validation()
        with self._lock:
            self._closed = True
        if self._owns_executor and isinstance(self._executor, ThreadPoolExecutor):
            self._executor.shutdown(wait=False, cancel_futures=True)

    def _arm_locked(self, gen: int) -> None:
        self._handle = self.scheduler.call_later(
            self.timings.validation_interval_seconds,
            lambda: self._tick(gen),
            name="session-validate",
        )

    def _tick(self, gen: int) -> None:
        with self._lock:
            if gen != self._generation or self._closed:
                return
            self._arm_locked(gen)
        try:
            fut = self._executor.submit(self.validate_session)
        except RuntimeError as e:
            self.logger.warning("Validation not submitted: %s", e)
            return
        fut.add_done_callback(lambda f: self._finish(gen, f))

    def _finish(self, gen: int, fut: Future) -> None:
        if fut.cancelled():
            return
        ok = fut.result()
        with self._lock:
            if gen != self._generation:
                return
            cb = self._on_invalid
        if ok:
            self.logger.debug("Session still valid")
            return
        self.logger.warning("Session failed re-validation")
        if cb is not None:
            cb()
