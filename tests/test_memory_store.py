from datetime import datetime, timedelta, timezone

import pytest

from hostpanel.storage.errors import ConstraintViolation
from hostpanel.storage.memory import MemoryStore
from hostpanel.storage.models import Account, AuditEvent

SECRET_KEY = "memory-store-test-key"


def _account(**overrides):
    fields = {
        "id": "acct-1",
        "username": "alice",
        "email": "alice@example.com",
        "password_hash": "$argon2id$placeholder",
    }
    fields.update(overrides)
    return Account(**fields)


def test_returned_records_are_copies(store):
    created = store.create_account(_account())
    created.failed_login_count = 99
    created.email = "mutated@example.com"
    fresh = store.get_account("acct-1")
    assert fresh.failed_login_count == 0
    assert fresh.email == "alice@example.com"


def test_uniqueness_constraints(store):
    store.create_account(_account())
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account(_account(id="acct-2", email="other@example.com"))
    assert excinfo.value.detail == {"field": "username"}
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account(_account(id="acct-2", username="bob", email="ALICE@example.com"))
    assert excinfo.value.detail == {"field": "email"}


def test_username_lookup_is_case_sensitive(store):
    store.create_account(_account())
    assert store.get_account_by_username("alice") is not None
    assert store.get_account_by_username("Alice") is None
    assert store.get_account_by_email("Alice@Example.com").id == "acct-1"


def test_every_write_bumps_version(store):
    created = store.create_account(_account())
    assert created.version == 1
    after_hash = store.set_password_hash("acct-1", "$argon2id$new")
    after_profile = store.update_profile("acct-1", {"locale": "sw"})
    assert after_hash.version == 2
    assert after_profile.version == 3


def test_update_lockout_is_compare_and_set(store):
    created = store.create_account(_account())
    now = datetime.now(timezone.utc)

    updated = store.update_lockout(
        "acct-1", expected_version=created.version, failed_login_count=1, locked_until=None
    )
    assert updated.failed_login_count == 1

    stale = store.update_lockout(
        "acct-1",
        expected_version=created.version,
        failed_login_count=7,
        locked_until=now,
    )
    assert stale is None
    assert store.get_account("acct-1").failed_login_count == 1
    assert (
        store.update_lockout("missing", expected_version=1, failed_login_count=1, locked_until=None)
        is None
    )


def test_update_lockout_keeps_last_login_unless_given(store):
    created = store.create_account(_account())
    stamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
    first = store.update_lockout(
        "acct-1",
        expected_version=created.version,
        failed_login_count=0,
        locked_until=None,
        last_login_at=stamp,
    )
    second = store.update_lockout(
        "acct-1", expected_version=first.version, failed_login_count=1, locked_until=None
    )
    assert second.last_login_at == stamp


def test_two_factor_invariant_enforced(store):
    store.create_account(_account())
    with pytest.raises(ValueError):
        store.set_two_factor("acct-1", secret=None, enabled=True)
    with pytest.raises(ValueError):
        store.create_account(_account(id="acct-2", username="bob", email="b@example.com", two_factor_enabled=True))


def test_two_factor_secret_is_encrypted_at_rest(store):
    store.create_account(_account())
    store.set_two_factor("acct-1", secret="JBSWY3DPEHPK3PXP", enabled=False)
    assert store.accounts["acct-1"].two_factor_secret != "JBSWY3DPEHPK3PXP"
    assert store.get_account("acct-1").two_factor_secret == "JBSWY3DPEHPK3PXP"


def test_set_two_factor_respects_expected_version(store):
    created = store.create_account(_account())
    store.set_two_factor("acct-1", secret="JBSWY3DPEHPK3PXP", enabled=False)
    assert (
        store.set_two_factor(
            "acct-1", secret="JBSWY3DPEHPK3PXP", enabled=True, expected_version=created.version
        )
        is None
    )
    assert store.get_account("acct-1").two_factor_enabled is False


def test_update_profile_rejects_unknown_fields(store):
    store.create_account(_account())
    with pytest.raises(ValueError):
        store.update_profile("acct-1", {"password_hash": "x"})
    assert store.update_profile("missing", {"locale": "sw"}) is None


def test_persistence_round_trip(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET_KEY)
    store.create_account(_account())
    store.set_two_factor("acct-1", secret="JBSWY3DPEHPK3PXP", enabled=True)
    store.record_audit_event(
        AuditEvent(id="evt-1", account_id="acct-1", action="2FA enabled", category="security")
    )

    state_file = tmp_path / "state" / "accounts.json"
    assert state_file.exists()
    assert "JBSWY3DPEHPK3PXP" not in state_file.read_text()

    reloaded = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET_KEY)
    account = reloaded.get_account("acct-1")
    assert account.two_factor_enabled is True
    assert account.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert account.created_at.tzinfo is not None
    assert [e.id for e in reloaded.list_audit_events("acct-1")] == ["evt-1"]


def test_wrong_key_cannot_read_secret(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), secret_key=SECRET_KEY)
    store.create_account(_account())
    store.set_two_factor("acct-1", secret="JBSWY3DPEHPK3PXP", enabled=False)

    other = MemoryStore(fs_root=str(tmp_path), secret_key="a-different-key")
    with pytest.raises(RuntimeError):
        other.get_account("acct-1")


def test_prune_audit_events(store):
    now = datetime.now(timezone.utc)
    store.record_audit_event(
        AuditEvent(id="old", account_id="a", action="x", category="auth", created_at=now - timedelta(days=100))
    )
    store.record_audit_event(AuditEvent(id="new", account_id="a", action="y", category="auth", created_at=now))
    assert store.prune_audit_events(now - timedelta(days=90)) == 1
    assert [e.id for e in store.list_audit_events("a")] == ["new"]
