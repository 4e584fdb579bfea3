import threading
from datetime import timedelta

import pytest

from hostpanel.service import audit as audit_module
from hostpanel.service.audit import AuditTrail, StoreAuditSink


class RecordingLogger:
    def __init__(self):
        self.entries = []

    def _log(self, event, **kwargs):
        self.entries.append({"event": event, **kwargs})

    info = warning = error = _log


class FailingSink:
    def __init__(self):
        self.calls = 0

    def record(self, event):
        self.calls += 1
        raise RuntimeError("sink offline")


class SlowSink:
    def __init__(self):
        self.release = threading.Event()
        self.events = []

    def record(self, event):
        self.release.wait(timeout=5)
        self.events.append(event)


def test_record_without_loop_writes_inline(store, clock):
    trail = AuditTrail(StoreAuditSink(store, clock=clock), store, clock=clock)
    event = trail.record("acct-1", "User logged in", "auth", ip_address="10.0.0.1")
    assert trail.pending == 0
    stored = store.list_audit_events("acct-1")
    assert [e.id for e in stored] == [event.id]
    assert stored[0].status == "success"
    assert stored[0].created_at == clock.now


def test_sink_failure_is_logged_not_raised(store, clock, monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(audit_module, "logger", recorder)
    sink = FailingSink()
    trail = AuditTrail(sink, store, clock=clock)
    trail.record("acct-1", "Login failed", "auth", "failed", detail={"stage": "password"})
    assert sink.calls == 1
    failures = [entry for entry in recorder.entries if entry["event"] == "audit_record_failed"]
    assert len(failures) == 1
    assert failures[0]["account_id"] == "acct-1"
    assert failures[0]["action"] == "Login failed"
    assert failures[0]["details"] == {"stage": "password"}


async def test_record_does_not_wait_for_sink(store, clock):
    sink = SlowSink()
    trail = AuditTrail(sink, store, clock=clock)
    trail.record("acct-1", "User logged in", "auth")
    assert trail.pending == 1
    assert sink.events == []

    sink.release.set()
    await trail.drain()
    assert trail.pending == 0
    assert len(sink.events) == 1


async def test_failures_inside_loop_are_contained(store, clock):
    trail = AuditTrail(FailingSink(), store, clock=clock)
    trail.record("acct-1", "User logged in", "auth")
    await trail.drain()
    assert trail.pending == 0


def test_unknown_category_or_status_rejected(store, clock):
    trail = AuditTrail(StoreAuditSink(store), store, clock=clock)
    with pytest.raises(ValueError):
        trail.record("acct-1", "Something", "unknown")
    with pytest.raises(ValueError):
        trail.record("acct-1", "Something", "auth", "maybe")


def test_list_filters_and_orders_newest_first(store, clock):
    trail = AuditTrail(StoreAuditSink(store), store, clock=clock)
    trail.record("acct-1", "User registered", "auth")
    clock.advance(minutes=1)
    trail.record("acct-1", "2FA enabled", "security")
    clock.advance(minutes=1)
    trail.record("acct-1", "Login failed", "auth", "failed")
    trail.record("acct-2", "User registered", "auth")

    events = trail.list_events("acct-1")
    assert [e.action for e in events] == ["Login failed", "2FA enabled", "User registered"]
    assert [e.action for e in trail.list_events("acct-1", category="auth")] == [
        "Login failed",
        "User registered",
    ]
    assert [e.action for e in trail.list_events("acct-1", status="failed")] == ["Login failed"]
    assert len(trail.list_events("acct-1", limit=1)) == 1


def test_stats_group_by_category(store, clock):
    trail = AuditTrail(StoreAuditSink(store), store, clock=clock)
    trail.record("acct-1", "User logged in", "auth")
    clock.advance(minutes=5)
    trail.record("acct-1", "User logged out", "auth")
    trail.record("acct-1", "2FA enabled", "security")

    stats = trail.stats("acct-1")
    assert stats[0] == {"category": "auth", "count": 2, "last_activity": clock.now}
    assert stats[1]["category"] == "security"
    assert stats[1]["count"] == 1


def test_trail_is_append_only(store, clock):
    trail = AuditTrail(StoreAuditSink(store), store, clock=clock)
    trail.record("acct-1", "User logged in", "auth")
    trail.record("acct-2", "User logged in", "auth")

    assert not hasattr(trail, "clear")
    assert not hasattr(store, "clear_audit_events")
    assert len(trail.list_events("acct-1")) == 1
    assert len(trail.list_events("acct-2")) == 1


def test_prune_applies_retention(store, clock):
    sink = StoreAuditSink(store, retention=timedelta(days=90), clock=clock)
    trail = AuditTrail(sink, store, clock=clock)
    trail.record("acct-1", "User registered", "auth")
    clock.advance(days=60)
    trail.record("acct-1", "User logged in", "auth")
    clock.advance(days=31)

    assert sink.prune() == 1
    assert [e.action for e in trail.list_events("acct-1")] == ["User logged in"]
