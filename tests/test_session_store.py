from __future__ import annotations

import json

from civicportal.core.session.store import SessionStore, TabScopedStorage
from tests.helpers.fakes import DummyLogger, FakeClock


def _store(**kw):
    clock = kw.pop("clock", None) or FakeClock()
    backend = kw.pop("backend", None)
    if backend is None:
        backend = TabScopedStorage()
    return SessionStore(backend, clock=clock.time, logger=kw.pop("logger", DummyLogger()), **kw), backend, clock


def test_set_then_get():
    store, _backend, _clock = _store()
    store.set("loginTime", 1_700_000_000.0)
    store.set("deviceFingerprint", {"user_agent": "UA", "platform": "Linux"})
    assert store.get("loginTime") == 1_700_000_000.0
    assert store.get("deviceFingerprint") == {"user_agent": "UA", "platform": "Linux"}


def test_entry_format_has_value_and_timestamp():
    store, backend, clock = _store()
    store.set("loginTime", 42)
    raw = json.loads(backend["portal.session.loginTime"])
    assert raw == {"value": 42, "timestamp": clock.time()}


def test_missing_key_returns_none():
    store, _backend, _clock = _store()
    assert store.get("nope") is None


def test_entry_expires_after_max_age_and_is_deleted_on_read():
    store, backend, clock = _store(max_age_seconds=86400)
    store.set("loginTime", 1)
    clock.advance(86400)
    assert store.get("loginTime") == 1  # exactly max age is still valid
    clock.advance(1)
    assert store.get("loginTime") is None
    assert "portal.session.loginTime" not in backend


def test_expired_entry_stays_until_read():
    store, backend, clock = _store(max_age_seconds=10)
    store.set("loginTime", 1)
    clock.advance(60)
    assert "portal.session.loginTime" in backend
    store.get("loginTime")
    assert "portal.session.loginTime" not in backend


def test_deleted_raw_value_reads_as_none():
    store, backend, _clock = _store()
    store.set("deviceFingerprint", {"a": 1})
    del backend["portal.session.deviceFingerprint"]
    assert store.get("deviceFingerprint") is None


def test_malformed_raw_value_reads_as_none():
    store, backend, _clock = _store()
    backend["portal.session.deviceFingerprint"] = "{not json"
    assert store.get("deviceFingerprint") is None
    backend["portal.session.loginTime"] = json.dumps({"value": 3})
    assert store.get("loginTime") is None


def test_unserialisable_value_is_dropped_with_warning():
    log = DummyLogger()
    store, backend, _clock = _store(logger=log)
    store.set("bad", object())
    assert "portal.session.bad" not in backend
    assert any(level == "warning" for level, _m in log.lines)


def test_quota_exceeded_is_swallowed():
    log = DummyLogger()
    store, backend, _clock = _store(logger=log, max_bytes=256)
    store.set("big", "x" * 1000)
    assert store.get("big") is None
    assert any("storage_quota_exceeded" in m for _l, m in log.lines)


def test_backend_write_failure_is_swallowed():
    class FullBackend(TabScopedStorage):
        def __setitem__(self, key, value):  # noqa: ANN001
            raise OSError("quota")

    log = DummyLogger()
    store, _backend, _clock = _store(backend=FullBackend(), logger=log)
    store.set("loginTime", 1)
    assert store.get("loginTime") is None
    assert any(level == "warning" for level, _m in log.lines)


def test_clear_only_touches_namespace():
    store, backend, _clock = _store()
    backend["theme"] = "dark"
    store.set("deviceFingerprint", {"a": 1})
    store.set("loginTime", 1)
    store.clear()
    assert store.get("deviceFingerprint") is None
    assert store.get("loginTime") is None
    assert backend["theme"] == "dark"
    assert store.keys() == []


def test_remove_single_key():
    store, _backend, _clock = _store()
    store.set("a", 1)
    store.set("b", 2)
    store.remove("a")
    store.remove("missing")
    assert store.get("a") is None
    assert store.get("b") == 2


def test_tab_storage_holds_strings_only():
    import pytest

    backend = TabScopedStorage()
    with pytest.raises(TypeError):
        backend["k"] = 1  # type: ignore[assignment]
