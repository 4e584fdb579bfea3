from __future__ import annotations

import re
import secrets
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from hostpanel.logging import get_logger
from hostpanel.service.errors import (
    AccountNotFound,
    DuplicateIdentity,
    InvalidCredential,
    ValidationError,
)
from hostpanel.service.passwords import PasswordHasherService
from hostpanel.storage.common import account_summary, normalize_email
from hostpanel.storage.errors import ConstraintViolation
from hostpanel.storage.models import LOCALES, Account, AuditEvent

logger = get_logger(__name__)

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,64}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 256


class AccountStore(Protocol):
    """Persistence contract shared by the memory and postgres stores."""

    def create_account(self, account: Account) -> Account:
        ...

    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def get_account_by_email(self, email: str) -> Optional[Account]:
        ...

    def get_account_by_username(self, username: str) -> Optional[Account]:
        ...

    def update_profile(self, account_id: str, fields: Dict[str, Any]) -> Optional[Account]:
        ...

    def set_password_hash(self, account_id: str, password_hash: str) -> Optional[Account]:
        ...

    def set_two_factor(
        self,
        account_id: str,
        *,
        secret: Optional[str],
        enabled: bool,
        expected_version: Optional[int] = None,
    ) -> Optional[Account]:
        ...

    def update_lockout(
        self,
        account_id: str,
        *,
        expected_version: int,
        failed_login_count: int,
        locked_until: Optional[datetime],
        last_login_at: Optional[datetime] = None,
    ) -> Optional[Account]:
        ...

    def record_audit_event(self, event: AuditEvent) -> None:
        ...

    def list_audit_events(
        self,
        account_id: str,
        *,
        limit: int = 50,
        category: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[AuditEvent]:
        ...

    def audit_stats(self, account_id: str) -> List[Dict[str, Any]]:
        ...

    def prune_audit_events(self, before: datetime) -> int:
        ...


def _validate_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError("password is too long", detail={"field": "password"})


def _validate_email(email: str) -> str:
    normalized = normalize_email(email or "")
    if not EMAIL_PATTERN.match(normalized):
        raise ValidationError("invalid email address", detail={"field": "email"})
    return normalized


class AccountService:
    """Account lifecycle on top of an ``AccountStore``."""

    def __init__(self, store: AccountStore, hasher: PasswordHasherService) -> None:
        self.store = store
        self.hasher = hasher

    async def create_account(self, username: str, email: str, password: str) -> Account:
        if not USERNAME_PATTERN.match(username or ""):
            raise ValidationError(
                "username must be 3-64 characters of letters, digits, '_', '.' or '-'",
                detail={"field": "username"},
            )
        normalized_email = _validate_email(email)
        _validate_password(password)
        password_hash = await self.hasher.hash_async(password)
        account = Account(
            id=str(uuid.uuid4()),
            username=username,
            email=normalized_email,
            password_hash=password_hash,
            api_key=secrets.token_hex(16),
            api_secret=secrets.token_hex(16),
        )
        try:
            created = self.store.create_account(account)
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "identity")
            raise DuplicateIdentity(f"{field} already registered", detail={"field": field}) from exc
        logger.info("account_created", **account_summary(created))
        return created

    def find_by_email(self, email: str) -> Account:
        account = self.store.get_account_by_email(email or "")
        if account is None:
            raise AccountNotFound("account not found")
        return account

    def find_by_id(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFound("account not found")
        return account

    def update_profile(
        self,
        account_id: str,
        *,
        email: Optional[str] = None,
        locale: Optional[str] = None,
        timezone: Optional[str] = None,
    ) -> Account:
        fields: Dict[str, Any] = {}
        if email is not None:
            fields["email"] = _validate_email(email)
        if locale is not None:
            if locale not in LOCALES:
                raise ValidationError(
                    f"locale must be one of {', '.join(LOCALES)}", detail={"field": "locale"}
                )
            fields["locale"] = locale
        if timezone is not None:
            if not timezone.strip() or len(timezone) > 64:
                raise ValidationError("invalid timezone", detail={"field": "timezone"})
            fields["timezone"] = timezone.strip()
        if not fields:
            return self.find_by_id(account_id)
        try:
            updated = self.store.update_profile(account_id, fields)
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "email")
            raise DuplicateIdentity(f"{field} already registered", detail={"field": field}) from exc
        if updated is None:
            raise AccountNotFound("account not found")
        logger.info("profile_updated", account_id=account_id, fields=sorted(fields))
        return updated

    async def change_password(self, account_id: str, current: str, new: str) -> Account:
        account = self.find_by_id(account_id)
        if not await self.hasher.verify_async(current, account.password_hash):
            raise InvalidCredential("current password is incorrect")
        _validate_password(new)
        password_hash = await self.hasher.hash_async(new)
        updated = self.store.set_password_hash(account_id, password_hash)
        if updated is None:
            raise AccountNotFound("account not found")
        logger.info("password_changed", account_id=account_id)
        return updated

    async def rehash_if_needed(self, account: Account, password: str) -> Account:
        """Upgrade a verified password hash produced with older cost parameters."""
        if not self.hasher.needs_rehash(account.password_hash):
            return account
        password_hash = await self.hasher.hash_async(password)
        updated = self.store.set_password_hash(account.id, password_hash)
        if updated is None:
            return account
        logger.info("password_rehashed", account_id=account.id)
        return updated
