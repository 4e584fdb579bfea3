"""Storage helpers shared between the memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from hostpanel.logging import get_logger
from hostpanel.storage.models import Account, AuditEvent

logger = get_logger(__name__)

# Fields an account owner may change through a profile update
PROFILE_FIELDS = frozenset({"email", "locale", "timezone"})


def normalize_email(email: str) -> str:
    return email.strip().lower()


class SecretCipher:
    """Symmetric encryption for two-factor secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("secret encryption key material is required")
        key = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        self._fernet = Fernet(key)

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return token
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            # A secret we cannot decrypt must never be treated as valid
            logger.error("two_factor_secret_decrypt_failed")
            raise RuntimeError("unable to decrypt stored two-factor secret") from exc


def check_two_factor_invariant(secret: Optional[str], enabled: bool) -> None:
    if enabled and not secret:
        raise ValueError("two-factor cannot be enabled without a secret")


def filter_audit_events(
    events: Iterable[AuditEvent],
    *,
    limit: int = 50,
    category: Optional[str] = None,
    status: Optional[str] = None,
) -> List[AuditEvent]:
    selected = [
        evt
        for evt in events
        if (not category or evt.category == category)
        and (not status or evt.status == status)
    ]
    selected.sort(key=lambda evt: evt.created_at, reverse=True)
    return selected[: max(limit, 0)]


def summarize_audit_events(events: Iterable[AuditEvent]) -> List[Dict[str, Any]]:
    """Group events per category with count and latest timestamp, busiest first."""
    buckets: Dict[str, Dict[str, Any]] = {}
    for evt in events:
        bucket = buckets.setdefault(
            evt.category, {"category": evt.category, "count": 0, "last_activity": None}
        )
        bucket["count"] += 1
        last: Optional[datetime] = bucket["last_activity"]
        if last is None or evt.created_at > last:
            bucket["last_activity"] = evt.created_at
    return sorted(buckets.values(), key=lambda b: b["count"], reverse=True)


def account_summary(account: Account) -> Dict[str, Any]:
    """Loggable view of an account without credentials."""
    return {
        "account_id": account.id,
        "username": account.username,
        "two_factor_enabled": account.two_factor_enabled,
        "failed_login_count": account.failed_login_count,
    }
