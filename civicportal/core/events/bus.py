from __future__ import annotations

import collections
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from civicportal.core.events.dispatcher import start_worker, stop_worker
from civicportal.core.events.models import BaseEvent, EventSeverity, SourceSubsystem


class OverflowPolicy(str, Enum):
    DROP_OLDEST = "DROP_OLDEST"
    DROP_NEWEST = "DROP_NEWEST"


class EventBusConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    max_queue_size: int = Field(default=1000, ge=10, le=100_000)
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    shutdown_grace_seconds: float = Field(default=2.0, ge=0.1, le=60.0)
    keep_recent: int = Field(default=200, ge=0)


@dataclass
class _Counters:
    published_total: int = 0
    dropped_total: int = 0
    delivered_total: int = 0
    handler_errors_total: int = 0
    per_type_published: Dict[str, int] = field(default_factory=dict)


@dataclass
class _Sub:
    event_type: str
    handler: Callable[[BaseEvent], None]
    priority: int
    worker: Any


class EventBus:
    """
    In-process event bus between the session core and the UI layer.

    - publish never blocks the caller (timer threads publish from callbacks)
    - each subscriber sees events in publish order
    - a failing handler is logged and reported as `error.raised`; others still receive the event
    """

    def __init__(self, *, cfg: Optional[EventBusConfig] = None, logger=None):
        self.cfg = cfg or EventBusConfig()
        self.logger = logger or logging.getLogger("civicportal.events")

        self._lock = threading.Lock()
        self._cv = threading.Condition(self._lock)
        self._queue: Deque[BaseEvent] = collections.deque()
        self._subs: List[_Sub] = []
        self._counters = _Counters()
        self._recent: Deque[Dict[str, Any]] = collections.deque(maxlen=max(1, int(self.cfg.keep_recent)))
        self._running = False
        self._accepting = True
        self._dispatcher_thread = threading.Thread(target=self._dispatch_loop, name="eventbus-dispatch", daemon=True)
        if self.cfg.enabled:
            self.start()

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._accepting = True
        self._dispatcher_thread.start()

    def subscribe(self, event_type: str, handler: Callable[[BaseEvent], None], priority: int = 50) -> None:
        """
        event_type supports an exact name ("session.ended"), a prefix ("session.*") or "*".
        """
        if not callable(handler):
            raise ValueError("handler must be callable")
        with self._lock:
            name = f"eventbus-sub-{len(self._subs) + 1}"
            worker = start_worker(name=name, handler=lambda ev, h=handler: self._safe_handle(h, ev))
            self._subs.append(_Sub(event_type=str(event_type), handler=handler, priority=int(priority), worker=worker))
            self._subs.sort(key=lambda s: s.priority)

    def unsubscribe(self, handler: Callable[[BaseEvent], None]) -> int:
        with self._lock:
            gone = [s for s in self._subs if s.handler is handler]
            self._subs = [s for s in self._subs if s.handler is not handler]
        for s in gone:
            stop_worker(s.worker, grace_seconds=0.5)
        return len(gone)

    def publish(self, ev: BaseEvent) -> bool:
        return self.publish_nowait(ev)

    def publish_nowait(self, ev: BaseEvent) -> bool:
        if not self._accepting or not self.cfg.enabled:
            return False
        with self._lock:
            if len(self._queue) >= int(self.cfg.max_queue_size):
                self._counters.dropped_total += 1
                if self.cfg.overflow_policy == OverflowPolicy.DROP_NEWEST:
                    self.logger.warning("Event bus full; dropped %s", ev.event_type)
                    return False
                dropped = self._queue.popleft()
                self.logger.warning("Event bus full; dropped oldest %s", dropped.event_type)
            self._queue.append(ev)
            self._counters.published_total += 1
            per_type = self._counters.per_type_published
            per_type[ev.event_type] = per_type.get(ev.event_type, 0) + 1
            self._recent.appendleft(ev.model_dump(mode="json"))
            self._cv.notify()
            return True

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            c = self._counters
            return {
                "enabled": bool(self.cfg.enabled) and self._running,
                "published_total": c.published_total,
                "dropped_total": c.dropped_total,
                "delivered_total": c.delivered_total,
                "handler_errors_total": c.handler_errors_total,
                "queue_depth": len(self._queue),
                "subscribers": len(self._subs),
                "per_type_published": dict(c.per_type_published),
            }

    def dump_recent(self, n: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._recent)[: max(1, int(n))]

    def set_enabled(self, enabled: bool) -> None:
        self.cfg.enabled = bool(enabled)

    def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        self._accepting = False
        if grace_seconds is None:
            grace_seconds = float(self.cfg.shutdown_grace_seconds)
        deadline = time.time() + float(grace_seconds)
        while time.time() < deadline:
            with self._lock:
                if not self._queue:
                    break
                self._cv.notify_all()
            time.sleep(0.05)
        self._running = False
        with self._lock:
            self._cv.notify_all()
        if self._dispatcher_thread.is_alive():
            self._dispatcher_thread.join(timeout=max(0.1, float(grace_seconds)))
        with self._lock:
            subs = list(self._subs)
            self._subs = []
        for s in subs:
            stop_worker(s.worker, grace_seconds=0.5)

    # ---- internals ----
    def _dispatch_loop(self) -> None:
        while self._running:
            with self._lock:
                if not self._queue:
                    self._cv.wait(timeout=0.2)
                    continue
                ev = self._queue.popleft()
                subs = list(self._subs)
            delivered = 0
            for s in subs:
                if _match(s.event_type, ev.event_type):
                    s.worker.q.put_nowait(ev)
                    delivered += 1
            if delivered:
                with self._lock:
                    self._counters.delivered_total += delivered

    def _safe_handle(self, handler: Callable[[BaseEvent], None], ev: BaseEvent) -> None:
        try:
            handler(ev)
        except Exception as e:  # noqa: BLE001
            with self._lock:
                self._counters.handler_errors_total += 1
            self.logger.exception("Event handler %s failed on %s", getattr(handler, "__name__", "handler"), ev.event_type)
            if ev.event_type == "error.raised":
                return
            self.publish_nowait(
                BaseEvent(
                    event_type="error.raised",
                    trace_id=ev.trace_id,
                    source_subsystem=SourceSubsystem.events,
                    severity=EventSeverity.ERROR,
                    payload={"handler": getattr(handler, "__name__", "handler"), "event_type": ev.event_type, "error": str(e)[:500]},
                )
            )


def _match(subscribed: str, event_type: str) -> bool:
    if subscribed == "*":
        return True
    if subscribed.endswith(".*"):
        return event_type.startswith(subscribed[:-1])
    return subscribed == event_type
