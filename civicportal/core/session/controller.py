from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from civicportal.core.config.models import DEFAULT_TIMINGS, SessionTimings
from civicportal.core.errors import DeviceMismatchError, PortalError, SessionInvalidError
from civicportal.core.events.models import (
    SESSION_ENDED,
    SESSION_STARTED,
    SESSION_STATE,
    WARNING_CLEARED,
    WARNING_COUNTDOWN,
    WARNING_RAISED,
    BaseEvent,
    EventSeverity,
    SourceSubsystem,
)
from civicportal.core.identity.interfaces import IdentityAuthority, ProfileStore
from civicportal.core.identity.models import LoginDevice, Principal, UserProfile
from civicportal.core.session.activity import ActivitySignalHub, ActivityTracker
from civicportal.core.session.fingerprint import DeviceFingerprint, FingerprintGenerator, compare
from civicportal.core.session.models import (
    END_STATES,
    EndReason,
    SessionSnapshot,
    SessionState,
)
from civicportal.core.session.notices import end_notice, warning_notice
from civicportal.core.session.scheduler import Scheduler, ThreadingScheduler, TimerHandle
from civicportal.core.session.store import FINGERPRINT_KEY, LOGIN_TIME_KEY, SessionStore
from civicportal.core.session.validator import SessionValidator


class SessionLifecycleController:
    """
    Owns the session state machine.

    Every way a session can end (inactivity, failed re-validation, device
    mismatch, logout, external sign-out) funnels into one teardown that runs
    at most once per session and publishes exactly one session.ended event.

    Threading: callbacks arrive from timer threads, the validator pool and
    the authority's notifier. All state is guarded by one re-entrant lock;
    network calls (profile fetch, record_login, revoke) run outside it.
    """

    def __init__(
        self,
        authority: IdentityAuthority,
        profiles: ProfileStore,
        *,
        timings: Optional[SessionTimings] = None,
        store: Optional[SessionStore] = None,
        fingerprints: Optional[FingerprintGenerator] = None,
        tracker: Optional[ActivityTracker] = None,
        validator: Optional[SessionValidator] = None,
        scheduler: Optional[Scheduler] = None,
        signals: Optional[ActivitySignalHub] = None,
        event_bus=None,
        event_logger=None,
        security_log=None,
        logger=None,
        clock: Callable[[], float] = time.time,
    ):
        self.authority = authority
        self.profiles = profiles
        self.timings = timings or DEFAULT_TIMINGS
        self.logger = logger or logging.getLogger("civicportal.session")
        self.clock = clock
        self._owns_scheduler = scheduler is None
        self.scheduler: Scheduler = scheduler or ThreadingScheduler(logger=self.logger)
        self.signals = signals or (tracker.signals if tracker is not None else ActivitySignalHub(logger=self.logger))
        self.store = store or SessionStore(
            max_age_seconds=self.timings.max_session_duration_seconds, clock=clock, logger=self.logger
        )
        self.fingerprints = fingerprints or FingerprintGenerator(logger=self.logger)
        self.tracker = tracker or ActivityTracker(
            self.timings, self.scheduler, signals=self.signals, clock=clock, logger=self.logger
        )
        self._owns_validator = validator is None
        self.validator = validator or SessionValidator(authority, self.timings, self.scheduler, logger=self.logger)
        self.event_bus = event_bus
        self.event_logger = event_logger
        self.security_log = security_log

        self._lock = threading.RLock()
        self._state = SessionState.UNAUTHENTICATED
        self._live = False
        # bumped on every login attempt and every teardown; stale work compares against it
        self._generation = 0
        self._pending_generation: Optional[int] = None
        self._trace_id = "session"
        self._principal: Optional[Principal] = None
        self._profile: Optional[UserProfile] = None
        self._fingerprint: Optional[DeviceFingerprint] = None
        self._login_time: Optional[float] = None
        self._countdown: Optional[TimerHandle] = None
        self._countdown_generation = 0
        self._warning_remaining: Optional[int] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ---- read-only views ----
    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def principal_id(self) -> Optional[str]:
        with self._lock:
            return self._principal.principal_id if self._principal else None

    @property
    def profile(self) -> Optional[UserProfile]:
        with self._lock:
            return self._profile

    @property
    def warning_seconds_remaining(self) -> Optional[int]:
        with self._lock:
            return self._warning_remaining

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            live = self._live
            return SessionSnapshot(
                state=self._state,
                principal_id=self._principal.principal_id if self._principal else None,
                profile=self._profile,
                fingerprint=self._fingerprint,
                login_time=self._login_time,
                session_start=self.tracker.session_start if live else None,
                last_activity=self.tracker.last_activity if live else None,
                seconds_until_expiry=self.tracker.seconds_until_expiry() if live else 0,
                session_duration_seconds=self.tracker.session_duration_seconds() if live else 0,
                warning_seconds_remaining=self._warning_remaining,
            )

    # ---- wiring ----
    def start(self) -> None:
        with self._lock:
            if self._unsubscribe is None:
                self._unsubscribe = self.authority.on_principal_changed(self._on_principal_changed)
        principal = self.authority.current_principal()
        if principal is not None:
            self._on_principal_changed(principal)

    def close(self) -> None:
        with self._lock:
            unsub, self._unsubscribe = self._unsubscribe, None
            self._generation += 1
            self._pending_generation = None
            self._stop_governance_locked()
        if unsub is not None:
            unsub()
        if self._owns_validator:
            self.validator.close()
        if self._owns_scheduler and isinstance(self.scheduler, ThreadingScheduler):
            self.scheduler.shutdown()

    # ---- user operations ----
    def extend_session(self) -> bool:
        """'Stay logged in'. Returns False when there is no live session."""
        with self._lock:
            if not self._live:
                return False
        self.tracker.record_activity()
        self._clear_warning()
        return True

    def logout(self) -> None:
        with self._lock:
            live = self._live
        if live and self._end(EndReason.user_action):
            return
        with self._lock:
            self._generation += 1
            self._pending_generation = None
            self._stop_governance_locked()
            self.store.clear()
        self._revoke()
        self._settle_unauthenticated()

    # ---- authority notifications ----
    def _on_principal_changed(self, principal: Optional[Principal]) -> None:
        if principal is None:
            self._on_signed_out()
            return
        with self._lock:
            if self._live:
                same = self._principal is not None and self._principal.principal_id == principal.principal_id
                if not same:
                    self.logger.info("Ignoring principal %s while a session is live", principal.principal_id)
                    return
                recheck = True
            elif self._state != SessionState.UNAUTHENTICATED or self._pending_generation is not None:
                return
            else:
                recheck = False
                self._generation += 1
                self._pending_generation = self._generation
                gen = self._generation
        if recheck:
            self._recheck_device()
            return
        self._authenticate(principal, gen)

    def _on_signed_out(self) -> None:
        with self._lock:
            live = self._live
            if self._pending_generation is not None:
                self._generation += 1
                self._pending_generation = None
        if live:
            self._end(EndReason.user_action, revoke=False)
        self._settle_unauthenticated()

    # ---- login ----
    def _authenticate(self, principal: Principal, gen: int) -> None:
        profile = self._fetch_profile(principal.principal_id)
        current = self.fingerprints.generate()

        with self._lock:
            if gen != self._generation:
                self.logger.info("Discarding stale login for %s", principal.principal_id)
                return
            self._pending_generation = None
            self._trace_id = uuid.uuid4().hex
            self._principal = principal
            self._profile = profile
            self._fingerprint = current
            self._live = True

            stored = self.store.get(FINGERPRINT_KEY)
            mismatch = stored is not None and not compare(current, _parse_fingerprint(stored))
            if not mismatch:
                now = float(self.clock())
                self._login_time = now
                self.store.set(FINGERPRINT_KEY, current.model_dump(mode="json"))
                self.store.set(LOGIN_TIME_KEY, now)
                self.tracker.start_tracking(
                    lambda: self._on_expiry(gen), lambda: self._on_warning(gen), self._on_activity
                )
                self.validator.start_validation(lambda: self._on_invalid(gen))
                self._set_state(SessionState.ACTIVE, {"principal_id": principal.principal_id})

        if mismatch:
            self._device_mismatch(current, stored)
            return

        self._record_login(principal.principal_id, current)
        self._publish(
            SESSION_STARTED,
            {
                "principal_id": principal.principal_id,
                "role": profile.role if profile else None,
                "seconds_until_expiry": int(self.timings.inactivity_timeout_seconds),
            },
        )

    def _fetch_profile(self, principal_id: str) -> Optional[UserProfile]:
        try:
            profile = self.profiles.fetch_profile(principal_id)
        except Exception as e:  # noqa: BLE001
            self.logger.warning("Profile unavailable for %s: %s", principal_id, e)
            return None
        if profile is None:
            self.logger.info("No profile document for %s", principal_id)
        return profile

    def _record_login(self, principal_id: str, fp: DeviceFingerprint) -> None:
        try:
            self.profiles.record_login(principal_id, device=LoginDevice(user_agent=fp.user_agent, time_zone=fp.time_zone))
        except Exception as e:  # noqa: BLE001
            self.logger.warning("Could not record login for %s: %s", principal_id, e)

    # ---- device binding ----
    def _recheck_device(self) -> None:
        current = self.fingerprints.generate()
        stored = self.store.get(FINGERPRINT_KEY)
        if stored is None:
            return
        if not compare(current, _parse_fingerprint(stored)):
            self._device_mismatch(current, stored)

    def _device_mismatch(self, current: DeviceFingerprint, stored: Any) -> None:
        err = DeviceMismatchError(current_platform=current.platform, current_time_zone=current.time_zone, stored=stored)
        self._end(EndReason.device_mismatch, audit=("session.device_mismatch", err))

    # ---- tracker / validator callbacks ----
    def _on_warning(self, gen: int) -> None:
        lead = int(self.timings.warning_lead_seconds)
        with self._lock:
            if gen != self._generation or not self._live or self._state != SessionState.ACTIVE:
                return
            # activity may have re-armed the tracker after its timer fired
            if self.tracker.seconds_until_expiry() > self.timings.warning_lead_seconds:
                return
            self._set_state(SessionState.WARNING)
            self._warning_remaining = lead
            self._countdown_generation += 1
            self._arm_countdown_locked(self._countdown_generation)
        self._publish(WARNING_RAISED, {"seconds_remaining": lead, "notice": warning_notice(lead)}, EventSeverity.WARN)

    def _on_activity(self) -> None:
        self._clear_warning()

    def _on_expiry(self, gen: int) -> None:
        self._end(EndReason.timeout, generation=gen)

    def _on_invalid(self, gen: int) -> None:
        self._end(EndReason.invalid, generation=gen, audit=("session.invalidated", SessionInvalidError()))

    # ---- warning countdown ----
    def _arm_countdown_locked(self, gen: int) -> None:
        self._countdown = self.scheduler.call_later(
            self.timings.countdown_tick_seconds, lambda: self._countdown_tick(gen), name="session-countdown"
        )

    def _countdown_tick(self, gen: int) -> None:
        with self._lock:
            if gen != self._countdown_generation or self._state != SessionState.WARNING:
                return
            remaining = self.tracker.seconds_until_expiry()
            self._warning_remaining = remaining
            if remaining > 0:
                self._arm_countdown_locked(gen)
            else:
                self._countdown = None
        self._publish(WARNING_COUNTDOWN, {"seconds_remaining": remaining})

    def _cancel_countdown_locked(self) -> None:
        self._countdown_generation += 1
        if self._countdown is not None:
            self._countdown.cancel()
            self._countdown = None
        self._warning_remaining = None

    def _clear_warning(self) -> None:
        with self._lock:
            if not self._live or self._state != SessionState.WARNING:
                return
            self._cancel_countdown_locked()
            self._set_state(SessionState.ACTIVE)
        self._publish(WARNING_CLEARED, {"seconds_until_expiry": self.tracker.seconds_until_expiry()})

    # ---- teardown ----
    def _end(
        self,
        reason: EndReason,
        *,
        revoke: bool = True,
        generation: Optional[int] = None,
        audit: Optional[Tuple[str, PortalError]] = None,
    ) -> bool:
        with self._lock:
            if not self._live:
                return False
            if generation is not None and generation != self._generation:
                return False
            self._live = False
            self._generation += 1
            principal_id = self._principal.principal_id if self._principal else None
            trace_id = self._trace_id
            terminal = END_STATES.get(reason)
            if terminal is not None:
                self._set_state(terminal, {"reason": reason.value})
            self._stop_governance_locked()
            self.store.clear()
            self._principal = None
            self._profile = None
            self._fingerprint = None
            self._login_time = None
        if audit is not None:
            self._audit(audit[0], audit[1], trace_id=trace_id, principal_id=principal_id)
        if revoke:
            self._revoke()
        with self._lock:
            self._set_state(SessionState.LOGGED_OUT, {"reason": reason.value})
        self.logger.info("Session ended for %s: %s", principal_id, reason.value)
        severity = EventSeverity.INFO if reason == EndReason.user_action else EventSeverity.WARN
        self._publish(
            SESSION_ENDED,
            {"reason": reason.value, "notice": end_notice(reason), "principal_id": principal_id},
            severity,
        )
        self._settle_unauthenticated()
        return True

    def _stop_governance_locked(self) -> None:
        self.tracker.stop_tracking()
        self.validator.stop_validation()
        self._cancel_countdown_locked()

    def _revoke(self) -> None:
        try:
            self.authority.revoke()
        except Exception as e:  # noqa: BLE001
            self.logger.warning("Credential revoke failed: %s", e)

    def _settle_unauthenticated(self) -> None:
        try:
            signed_out = self.authority.current_principal() is None
        except Exception as e:  # noqa: BLE001
            self.logger.warning("Could not read current principal: %s", e)
            return
        if not signed_out:
            return
        with self._lock:
            if self._state == SessionState.LOGGED_OUT:
                self._set_state(SessionState.UNAUTHENTICATED)

    # ---- events / audit ----
    def _set_state(self, new_state: SessionState, details: Optional[Dict[str, Any]] = None) -> None:
        old = self._state
        if old == new_state:
            return
        self._state = new_state
        payload = {"from": old.value, "to": new_state.value, **(details or {})}
        self.logger.info("Session state %s -> %s", old.value, new_state.value)
        if self.event_logger is not None:
            self.event_logger.log(self._trace_id, SESSION_STATE, payload)
        self._publish(SESSION_STATE, payload)

    def _publish(self, event_type: str, payload: Dict[str, Any], severity: EventSeverity = EventSeverity.INFO) -> None:
        if self.event_bus is None:
            return
        try:
            ev = BaseEvent(
                event_type=event_type,
                trace_id=self._trace_id,
                source_subsystem=SourceSubsystem.session,
                severity=severity,
                payload=payload,
            )
            self.event_bus.publish_nowait(ev)
        except Exception as e:  # noqa: BLE001
            self.logger.warning("Could not publish %s: %s", event_type, e)

    def _audit(self, event: str, err: PortalError, *, trace_id: str, principal_id: Optional[str]) -> None:
        if self.security_log is None:
            return
        try:
            self.security_log.log(
                trace_id=trace_id,
                severity=err.severity.value,
                event=event,
                principal_id=principal_id,
                outcome="logged_out",
                details=err.to_dict(),
            )
        except Exception as e:  # noqa: BLE001
            self.logger.warning("Security audit write failed: %s", e)


def _parse_fingerprint(raw: Any) -> Optional[DeviceFingerprint]:
    if not isinstance(raw, dict):
        return None
    try:
        return DeviceFingerprint.model_validate(raw)
    except ValidationError:
        return None
