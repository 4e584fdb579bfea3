from __future__ import annotations

import json
import threading
from dataclasses import asdict, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from hostpanel.logging import get_logger
from hostpanel.storage.common import (
    PROFILE_FIELDS,
    SecretCipher,
    check_two_factor_invariant,
    filter_audit_events,
    normalize_email,
    summarize_audit_events,
)
from hostpanel.storage.errors import ConstraintViolation, StoreUnavailable
from hostpanel.storage.models import Account, AuditEvent

_ACCOUNT_DATETIME_FIELDS = ("created_at", "updated_at", "locked_until", "last_login_at")


class MemoryStore:
    """In-memory account store with optional JSON persistence under ``fs_root``.

    Stored two-factor secrets are kept encrypted; every read hands back a
    decrypted copy so callers can never mutate stored state directly.
    """

    def __init__(self, fs_root: Optional[str] = None, *, secret_key: str) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.audit_events: Dict[str, List[AuditEvent]] = {}
        # RLock so helpers can nest inside public methods on the same thread
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(secret_key)
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _export(self, stored: Account) -> Account:
        return replace(stored, two_factor_secret=self._cipher.decrypt(stored.two_factor_secret))

    def _touch(self, stored: Account) -> None:
        stored.version += 1
        stored.updated_at = self._now()

    # accounts
    def create_account(self, account: Account) -> Account:
        email = normalize_email(account.email)
        with self._data_lock:
            for existing in self.accounts.values():
                if existing.username == account.username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if account.id in self.accounts:
                raise ConstraintViolation("account id already exists", {"field": "id"})
            check_two_factor_invariant(account.two_factor_secret, account.two_factor_enabled)
            stored = replace(
                account,
                email=email,
                two_factor_secret=self._cipher.encrypt(account.two_factor_secret),
                version=1,
            )
            self.accounts[stored.id] = stored
            self._persist_state()
            return self._export(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            stored = self.accounts.get(account_id)
            return self._export(stored) if stored else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        target = normalize_email(email)
        with self._data_lock:
            stored = next((a for a in self.accounts.values() if a.email == target), None)
            return self._export(stored) if stored else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            stored = next(
                (a for a in self.accounts.values() if a.username == username), None
            )
            return self._export(stored) if stored else None

    def update_profile(self, account_id: str, fields: Dict[str, Any]) -> Optional[Account]:
        unknown = set(fields) - PROFILE_FIELDS
        if unknown:
            raise ValueError(f"unsupported profile fields: {sorted(unknown)}")
        with self._data_lock:
            stored = self.accounts.get(account_id)
            if not stored:
                return None
            if "email" in fields:
                email = normalize_email(fields["email"])
                if any(
                    a.email == email and a.id != account_id for a in self.accounts.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                fields = {**fields, "email": email}
            for name, value in fields.items():
                setattr(stored, name, value)
            self._touch(stored)
            self._persist_state()
            return self._export(stored)

    def set_password_hash(self, account_id: str, password_hash: str) -> Optional[Account]:
        with self._data_lock:
            stored = self.accounts.get(account_id)
            if not stored:
                return None
            stored.password_hash = password_hash
            self._touch(stored)
            self._persist_state()
            return self._export(stored)

    def set_two_factor(
        self,
        account_id: str,
        *,
        secret: Optional[str],
        enabled: bool,
        expected_version: Optional[int] = None,
    ) -> Optional[Account]:
        check_two_factor_invariant(secret, enabled)
        with self._data_lock:
            stored = self.accounts.get(account_id)
            if not stored:
                return None
            if expected_version is not None and stored.version != expected_version:
                return None
            stored.two_factor_secret = self._cipher.encrypt(secret)
            stored.two_factor_enabled = enabled
            self._touch(stored)
            self._persist_state()
            return self._export(stored)

    def update_lockout(
        self,
        account_id: str,
        *,
        expected_version: int,
        failed_login_count: int,
        locked_until: Optional[datetime],
        last_login_at: Optional[datetime] = None,
    ) -> Optional[Account]:
        """Compare-and-set the lockout fields; ``None`` when the version moved on."""
        with self._data_lock:
            stored = self.accounts.get(account_id)
            if not stored or stored.version != expected_version:
                return None
            stored.failed_login_count = failed_login_count
            stored.locked_until = locked_until
            if last_login_at is not None:
                stored.last_login_at = last_login_at
            self._touch(stored)
            self._persist_state()
            return self._export(stored)

    # audit trail
    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.setdefault(event.account_id, []).append(replace(event))
            self._persist_state()

    def list_audit_events(
        self,
        account_id: str,
        *,
        limit: int = 50,
        category: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [replace(e) for e in self.audit_events.get(account_id, [])]
        return filter_audit_events(events, limit=limit, category=category, status=status)

    def audit_stats(self, account_id: str) -> List[Dict[str, Any]]:
        with self._data_lock:
            events = list(self.audit_events.get(account_id, []))
        return summarize_audit_events(events)

    def prune_audit_events(self, before: datetime) -> int:
        removed = 0
        with self._data_lock:
            for account_id, events in list(self.audit_events.items()):
                kept = [e for e in events if e.created_at >= before]
                removed += len(events) - len(kept)
                if kept:
                    self.audit_events[account_id] = kept
                else:
                    self.audit_events.pop(account_id, None)
            if removed:
                self._persist_state()
        return removed

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "audit_events": [
                self._serialize_event(e)
                for events in self.audit_events.values()
                for e in events
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise StoreUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StoreUnavailable(f"failed to load in-memory state: {exc}") from exc
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.audit_events = {}
        for raw in data.get("audit_events", []):
            event = self._deserialize_event(raw)
            self.audit_events.setdefault(event.account_id, []).append(event)
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_account(self, account: Account) -> dict:
        data = asdict(account)
        for name in _ACCOUNT_DATETIME_FIELDS:
            data[name] = self._serialize_datetime(data[name])
        return data

    def _deserialize_account(self, data: dict) -> Account:
        data = dict(data)
        for name in _ACCOUNT_DATETIME_FIELDS:
            data[name] = self._deserialize_datetime(data.get(name))
        return Account(**data)

    def _serialize_event(self, event: AuditEvent) -> dict:
        data = asdict(event)
        data["created_at"] = self._serialize_datetime(event.created_at)
        return data

    def _deserialize_event(self, data: dict) -> AuditEvent:
        data = dict(data)
        data["created_at"] = self._deserialize_datetime(data["created_at"])
        return AuditEvent(**data)
