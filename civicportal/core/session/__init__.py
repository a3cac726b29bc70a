from __future__ import annotations

"""
Client-side session governance: device binding, inactivity timeout with a
pre-expiry warning, periodic re-validation and a single teardown path.
"""

from civicportal.core.session.activity import ACTIVITY_SIGNALS, ActivitySignalHub, ActivityTracker, TimerPair
from civicportal.core.session.controller import SessionLifecycleController
from civicportal.core.session.fingerprint import DeviceFingerprint, FingerprintGenerator, compare
from civicportal.core.session.models import EndReason, SessionSnapshot, SessionState
from civicportal.core.session.scheduler import Scheduler, ThreadingScheduler, TimerHandle
from civicportal.core.session.store import SessionStore, TabScopedStorage
from civicportal.core.session.validator import SessionValidator

__all__ = [
    "ACTIVITY_SIGNALS",
    "ActivitySignalHub",
    "ActivityTracker",
    "TimerPair",
    "SessionLifecycleController",
    "DeviceFingerprint",
    "FingerprintGenerator",
    "compare",
    "EndReason",
    "SessionSnapshot",
    "SessionState",
    "Scheduler",
    "ThreadingScheduler",
    "TimerHandle",
    "SessionStore",
    "TabScopedStorage",
    "SessionValidator",
]
