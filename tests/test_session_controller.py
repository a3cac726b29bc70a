from __future__ import annotations

import json

import pytest

from civicportal.core.config.models import DEFAULT_TIMINGS
from civicportal.core.events import EventLogger
from civicportal.core.identity.models import UserProfile
from civicportal.core.security_events import SecurityAuditLogger
from civicportal.core.session.activity import ActivitySignalHub, ActivityTracker
from civicportal.core.session.controller import SessionLifecycleController
from civicportal.core.session.fingerprint import FingerprintGenerator
from civicportal.core.session.models import SessionState
from civicportal.core.session.store import FINGERPRINT_KEY, LOGIN_TIME_KEY, SessionStore, TabScopedStorage
from civicportal.core.session.validator import SessionValidator
from tests.helpers.fakes import (
    DummyLogger,
    FakeAuthority,
    FakeClock,
    FakeProbe,
    FakeProfileStore,
    InlineExecutor,
    ManualScheduler,
    RecordingBus,
)


class Harness:
    def __init__(self, tmp_path, *, backend=None, probe=None, profiles=None):  # noqa: ANN001
        self.clock = FakeClock()
        self.sched = ManualScheduler(self.clock)
        self.auth = FakeAuthority()
        self.profiles = profiles or FakeProfileStore(
            profiles={"citizen-1": UserProfile(uid="citizen-1", name="Asha", role="citizen")}
        )
        self.backend = backend if backend is not None else TabScopedStorage()
        self.probe = probe or FakeProbe()
        self.bus = RecordingBus()
        self.signals = ActivitySignalHub()
        log = DummyLogger()
        self.store = SessionStore(self.backend, clock=self.clock.time, logger=log)
        self.tracker = ActivityTracker(DEFAULT_TIMINGS, self.sched, signals=self.signals, clock=self.clock.time, logger=log)
        self.validator = SessionValidator(self.auth, DEFAULT_TIMINGS, self.sched, executor=InlineExecutor(), logger=log)
        self.security_path = str(tmp_path / "security.jsonl")
        self.events_path = str(tmp_path / "events.jsonl")
        self.ctl = SessionLifecycleController(
            self.auth,
            self.profiles,
            timings=DEFAULT_TIMINGS,
            store=self.store,
            fingerprints=FingerprintGenerator(self.probe, logger=log),
            tracker=self.tracker,
            validator=self.validator,
            scheduler=self.sched,
            signals=self.signals,
            event_bus=self.bus,
            event_logger=EventLogger(self.events_path),
            security_log=SecurityAuditLogger(self.security_path),
            logger=log,
            clock=self.clock.time,
        )
        self.ctl.start()

    def ended(self):
        return self.bus.of_type("session.ended")


@pytest.fixture
def h(tmp_path):
    return Harness(tmp_path)


def test_login_enters_active_and_binds_device(h):
    h.auth.sign_in("citizen-1")
    assert h.ctl.state == SessionState.ACTIVE
    assert h.ctl.principal_id == "citizen-1"
    assert h.ctl.profile.name == "Asha"
    assert h.store.get(FINGERPRINT_KEY)["platform"] == "Linux x86_64"
    assert h.store.get(LOGIN_TIME_KEY) == h.clock.time()
    assert h.tracker.is_tracking
    assert h.validator.is_running
    assert [pid for pid, _d in h.profiles.logins] == ["citizen-1"]
    assert h.profiles.logins[0][1].time_zone == "Asia/Kolkata"
    started = h.bus.of_type("session.started")
    assert len(started) == 1
    assert started[0].payload["role"] == "citizen"


def test_principal_present_at_start_is_authenticated():
    clock = FakeClock()
    sched = ManualScheduler(clock)
    auth = FakeAuthority()
    auth.sign_in("citizen-2")
    ctl = SessionLifecycleController(
        auth,
        FakeProfileStore(),
        store=SessionStore(TabScopedStorage(), clock=clock.time),
        fingerprints=FingerprintGenerator(FakeProbe()),
        scheduler=sched,
        validator=SessionValidator(auth, DEFAULT_TIMINGS, sched, executor=InlineExecutor()),
        logger=DummyLogger(),
        clock=clock.time,
    )
    ctl.start()
    assert ctl.state == SessionState.ACTIVE
    assert ctl.principal_id == "citizen-2"
    assert ctl.profile is None
    ctl.close()
    assert sched.pending() == 0


def test_device_mismatch_on_login(h):
    h.store.set(FINGERPRINT_KEY, {"user_agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0", "platform": "Linux x86_64", "time_zone": "America/New_York"})
    h.auth.sign_in("citizen-1")

    ended = h.ended()
    assert len(ended) == 1
    assert ended[0].payload["reason"] == "device_mismatch"
    assert "different device" in ended[0].payload["notice"]
    assert h.auth.revoke_calls == 1
    assert h.store.get(FINGERPRINT_KEY) is None
    assert h.ctl.state == SessionState.UNAUTHENTICATED
    assert "DEVICE_MISMATCH" in h.bus.states()
    assert not h.tracker.is_tracking
    assert h.sched.pending() == 0
    assert h.bus.of_type("session.started") == []
    with open(h.security_path, encoding="utf-8") as f:
        rec = json.loads(f.readline())
    assert rec["event"] == "session.device_mismatch"
    assert rec["principal_id"] == "citizen-1"


def test_unparseable_stored_fingerprint_is_a_mismatch(h):
    h.store.set(FINGERPRINT_KEY, "garbage")
    h.auth.sign_in("citizen-1")
    assert [e.payload["reason"] for e in h.ended()] == ["device_mismatch"]


def test_matching_stored_fingerprint_allows_login(h):
    h.store.set(FINGERPRINT_KEY, {"userAgent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0", "platform": "Linux x86_64", "timezone": "Asia/Kolkata", "screenResolution": "800x600"})
    h.auth.sign_in("citizen-1")
    assert h.ctl.state == SessionState.ACTIVE


def test_reemitted_principal_rechecks_device(h):
    h.auth.sign_in("citizen-1")
    h.auth.reemit()
    assert h.ctl.state == SessionState.ACTIVE
    h.probe.values["time_zone"] = "Europe/Berlin"
    h.auth.reemit()
    assert [e.payload["reason"] for e in h.ended()] == ["device_mismatch"]


def test_warning_then_click_returns_to_active(h):
    h.auth.sign_in("citizen-1")
    h.sched.advance(1500)
    assert h.ctl.state == SessionState.WARNING
    raised = h.bus.of_type("session.warning_raised")
    assert len(raised) == 1
    assert raised[0].payload["seconds_remaining"] == 300
    assert h.ctl.warning_seconds_remaining == 300

    h.sched.advance(3)
    assert [e.payload["seconds_remaining"] for e in h.bus.of_type("session.countdown")] == [299, 298, 297]
    assert h.ctl.warning_seconds_remaining == 297

    h.signals.emit("click")
    assert h.ctl.state == SessionState.ACTIVE
    assert h.ctl.warning_seconds_remaining is None
    assert len(h.bus.of_type("session.warning_cleared")) == 1
    assert h.sched.pending("session-countdown") == 0

    h.sched.advance(1499)
    assert h.ctl.state == SessionState.ACTIVE
    assert h.ended() == []
    h.sched.advance(1)
    assert h.ctl.state == SessionState.WARNING


def test_extend_session_from_warning(h):
    h.auth.sign_in("citizen-1")
    h.sched.advance(1600)
    assert h.ctl.extend_session() is True
    assert h.ctl.state == SessionState.ACTIVE
    assert h.ctl.snapshot().seconds_until_expiry == 1800


def test_extend_without_session_is_false(h):
    assert h.ctl.extend_session() is False


def test_inactivity_expires_session(h):
    h.auth.sign_in("citizen-1")
    h.sched.advance(1800)
    ended = h.ended()
    assert len(ended) == 1
    assert ended[0].payload["reason"] == "timeout"
    assert ended[0].payload["notice"] == "Your session has expired due to inactivity. Please log in again."
    assert h.auth.revoke_calls == 1
    assert h.bus.states() == ["ACTIVE", "WARNING", "EXPIRED", "LOGGED_OUT", "UNAUTHENTICATED"]
    assert h.store.keys() == []
    assert h.sched.pending() == 0
    h.sched.advance(10_000)
    assert len(h.ended()) == 1


def test_failed_revalidation_ends_session_once(h):
    h.auth.sign_in("citizen-1")
    h.auth.refresh_error = RuntimeError("user disabled")
    h.sched.advance(300)
    assert [e.payload["reason"] for e in h.ended()] == ["invalid"]
    assert h.ctl.state == SessionState.UNAUTHENTICATED
    assert "INVALID" in h.bus.states()
    h.sched.advance(600)
    assert h.auth.refresh_calls == 1


def test_concurrent_terminal_triggers_publish_once(h):
    h.auth.sign_in("citizen-1")
    # callbacks already handed out before the first teardown
    on_invalid = h.validator._on_invalid
    on_expiry = h.tracker._on_expiry
    on_invalid()
    on_invalid()
    on_expiry()
    h.ctl.logout()
    assert [e.payload["reason"] for e in h.ended()] == ["invalid"]
    assert h.auth.revoke_calls == 2  # teardown, then the explicit logout


def test_simultaneous_failures_write_one_audit_record(h):
    h.auth.sign_in("citizen-1")
    on_invalid = h.validator._on_invalid
    on_invalid()
    on_invalid()
    with open(h.security_path, encoding="utf-8") as f:
        rows = [json.loads(line) for line in f]
    assert [r["event"] for r in rows] == ["session.invalidated"]
    assert rows[0]["principal_id"] == "citizen-1"
    assert rows[0]["details"]["code"] == "session_invalid"


def test_warning_callback_after_fresh_activity_is_ignored(h):
    h.auth.sign_in("citizen-1")
    h.sched.advance(1499)
    on_warning = h.tracker._on_warning
    h.signals.emit("click")
    # the tracker already decided to warn; the click re-armed it first
    on_warning()
    assert h.ctl.state == SessionState.ACTIVE
    assert h.ctl.warning_seconds_remaining is None
    assert h.bus.of_type("session.warning_raised") == []
    h.sched.advance(1500)
    assert h.ctl.state == SessionState.WARNING
    assert len(h.bus.of_type("session.warning_raised")) == 1


def test_expiry_from_previous_session_does_not_end_new_one(h):
    h.auth.sign_in("citizen-1")
    old_expiry = h.tracker._on_expiry
    old_invalid = h.validator._on_invalid
    h.ctl.logout()
    h.auth.sign_in("citizen-1")
    old_expiry()
    old_invalid()
    assert h.ctl.state == SessionState.ACTIVE
    assert [e.payload["reason"] for e in h.ended()] == ["user_action"]
    assert h.tracker.is_tracking
    assert h.validator.is_running


def test_logout_tears_down(h):
    h.auth.sign_in("citizen-1")
    h.ctl.logout()
    ended = h.ended()
    assert [e.payload["reason"] for e in ended] == ["user_action"]
    assert h.ctl.state == SessionState.UNAUTHENTICATED
    assert h.store.get(FINGERPRINT_KEY) is None
    assert h.sched.pending() == 0
    assert h.bus.states() == ["ACTIVE", "LOGGED_OUT", "UNAUTHENTICATED"]


def test_logout_without_session_still_clears(h):
    h.store.set(LOGIN_TIME_KEY, 1)
    h.ctl.logout()
    assert h.store.get(LOGIN_TIME_KEY) is None
    assert h.auth.revoke_calls == 1
    assert h.ended() == []


def test_external_sign_out_ends_without_revoke(h):
    h.auth.sign_in("citizen-1")
    h.auth.sign_out_externally()
    assert [e.payload["reason"] for e in h.ended()] == ["user_action"]
    assert h.auth.revoke_calls == 0
    assert h.ctl.state == SessionState.UNAUTHENTICATED


def test_profile_failure_is_not_fatal(tmp_path):
    h = Harness(tmp_path, profiles=FakeProfileStore(fail_fetch=True, fail_record=True))
    h.auth.sign_in("citizen-1")
    assert h.ctl.state == SessionState.ACTIVE
    assert h.ctl.profile is None
    assert h.tracker.is_tracking
    assert h.bus.of_type("session.started")[0].payload["role"] is None


def test_logout_during_profile_fetch_wins(tmp_path):
    profiles = FakeProfileStore()
    h = Harness(tmp_path, profiles=profiles)
    profiles.on_fetch = lambda _pid: h.ctl.logout()
    h.auth.sign_in("citizen-1")
    assert h.ctl.state == SessionState.UNAUTHENTICATED
    assert not h.tracker.is_tracking
    assert not h.validator.is_running
    assert h.sched.pending() == 0
    assert h.store.keys() == []
    assert h.ended() == []


def test_relogin_after_logout(h):
    h.auth.sign_in("citizen-1")
    h.ctl.logout()
    h.auth.sign_in("citizen-1")
    assert h.ctl.state == SessionState.ACTIVE
    assert len(h.bus.of_type("session.started")) == 2


def test_snapshot(h):
    h.auth.sign_in("citizen-1")
    h.sched.advance(60)
    snap = h.ctl.snapshot()
    assert snap.state == SessionState.ACTIVE
    assert snap.principal_id == "citizen-1"
    assert snap.fingerprint.time_zone == "Asia/Kolkata"
    assert snap.seconds_until_expiry == 1740
    assert snap.session_duration_seconds == 60
    h.ctl.logout()
    snap = h.ctl.snapshot()
    assert snap.principal_id is None
    assert snap.seconds_until_expiry == 0


def test_state_transitions_are_written_to_event_log(h):
    h.auth.sign_in("citizen-1")
    h.ctl.logout()
    with open(h.events_path, encoding="utf-8") as f:
        rows = [json.loads(line) for line in f]
    assert [r["details"]["to"] for r in rows] == ["ACTIVE", "LOGGED_OUT", "UNAUTHENTICATED"]
    assert all(r["event"] == "session.state" for r in rows)


def test_close_stops_timers(h):
    h.auth.sign_in("citizen-1")
    h.ctl.close()
    assert h.sched.pending() == 0
    assert h.auth.listeners == []
    assert h.auth.revoke_calls == 0


def test_login_from_other_platform_is_device_mismatch(tmp_path):
    bound = FingerprintGenerator(FakeProbe()).generate()
    h = Harness(tmp_path, probe=FakeProbe(platform="Win32"))
    h.store.set(FINGERPRINT_KEY, bound.model_dump(mode="json"))
    h.auth.sign_in("citizen-1")
    ended = h.ended()
    assert [e.payload["reason"] for e in ended] == ["device_mismatch"]
    assert ended[0].payload["notice"] == "Session detected from a different device. For security, you have been logged out."
    assert h.ctl.state == SessionState.UNAUTHENTICATED
    assert h.store.get(FINGERPRINT_KEY) is None
    with open(h.security_path, encoding="utf-8") as f:
        rec = json.loads(f.readline())
    assert rec["details"]["context"]["current_platform"] == "Win32"
