from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Optional
from urllib.parse import quote, urlencode

from hostpanel.logging import get_logger
from hostpanel.service.clock import Clock, utcnow
from hostpanel.service.errors import (
    AccountNotFound,
    BadRequestError,
    ConflictError,
    InvalidCode,
    InvalidCredential,
)
from hostpanel.service.passwords import PasswordHasherService
from hostpanel.storage.models import Account

if TYPE_CHECKING:
    from hostpanel.service.accounts import AccountStore

logger = get_logger(__name__)

DEFAULT_INTERVAL = 30
DEFAULT_DIGITS = 6
_SECRET_BYTES = 20


def generate_secret() -> str:
    """Random 160-bit shared secret, base32 encoded without padding."""
    return base64.b32encode(secrets.token_bytes(_SECRET_BYTES)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    normalized = secret.replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return None


def _hotp(key: bytes, counter: int, digits: int) -> str:
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def generate_code(
    secret: str,
    at: datetime,
    *,
    interval: int = DEFAULT_INTERVAL,
    digits: int = DEFAULT_DIGITS,
) -> str:
    key = _decode_secret(secret)
    if key is None:
        return ""
    return _hotp(key, int(at.timestamp()) // interval, digits)


def verify_code(
    secret: str,
    code: str,
    at: datetime,
    *,
    window: int = 1,
    interval: int = DEFAULT_INTERVAL,
    digits: int = DEFAULT_DIGITS,
) -> bool:
    """Accept ``code`` if it matches any step within ``window`` of ``at``."""
    code = (code or "").strip()
    if len(code) != digits or not (code.isascii() and code.isdigit()):
        return False
    key = _decode_secret(secret)
    if key is None:
        return False
    counter = int(at.timestamp()) // interval
    matched = False
    for offset in range(-window, window + 1):
        if counter + offset < 0:
            continue
        # Compare every candidate so timing does not depend on which step matched
        if hmac.compare_digest(_hotp(key, counter + offset, digits), code):
            matched = True
    return matched


def provisioning_uri(
    secret: str,
    account_name: str,
    issuer: str,
    *,
    interval: int = DEFAULT_INTERVAL,
    digits: int = DEFAULT_DIGITS,
) -> str:
    label = quote(f"{issuer}:{account_name}", safe=":@")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": digits,
            "period": interval,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{query}"


@dataclass(frozen=True)
class Enrollment:
    secret: str
    provisioning_uri: str


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    pending: bool


class TwoFactorService:
    """TOTP enrollment, confirmation, login verification and removal."""

    _CONFIRM_RETRIES = 5

    def __init__(
        self,
        store: "AccountStore",
        hasher: PasswordHasherService,
        *,
        issuer: str = "Cloud Panel",
        digits: int = DEFAULT_DIGITS,
        interval: int = DEFAULT_INTERVAL,
        window: int = 1,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.issuer = issuer
        self.digits = digits
        self.interval = interval
        self.window = window
        self._clock = clock

    def _load(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFound("account not found")
        return account

    def _matches(self, secret: str, code: str) -> bool:
        return verify_code(
            secret,
            code,
            self._clock(),
            window=self.window,
            interval=self.interval,
            digits=self.digits,
        )

    def begin_enrollment(self, account_id: str) -> Enrollment:
        account = self._load(account_id)
        if account.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = generate_secret()
        if self.store.set_two_factor(account_id, secret=secret, enabled=False) is None:
            raise AccountNotFound("account not found")
        logger.info("two_factor_enrollment_started", account_id=account_id)
        return Enrollment(
            secret=secret,
            provisioning_uri=provisioning_uri(
                secret,
                account.username,
                self.issuer,
                interval=self.interval,
                digits=self.digits,
            ),
        )

    def confirm_enrollment(self, account_id: str, code: str) -> Account:
        for _ in range(self._CONFIRM_RETRIES):
            account = self._load(account_id)
            if account.two_factor_enabled:
                raise ConflictError("two-factor authentication is already enabled")
            secret = account.two_factor_secret
            if not secret:
                raise BadRequestError("two-factor enrollment has not been started")
            if not self._matches(secret, code):
                raise InvalidCode("invalid two-factor code")
            updated = self.store.set_two_factor(
                account_id,
                secret=secret,
                enabled=True,
                expected_version=account.version,
            )
            if updated is not None:
                logger.info("two_factor_enabled", account_id=account_id)
                return updated
            # Another write landed in between; only retry if the pending secret survived
            current = self._load(account_id)
            if current.two_factor_enabled or current.two_factor_secret != secret:
                raise ConflictError("two-factor enrollment changed, start again")
        raise ConflictError("two-factor enrollment changed, start again")

    def verify_login(self, account_id: str, code: str) -> Account:
        account = self._load(account_id)
        if not account.two_factor_enabled or not account.two_factor_secret:
            raise InvalidCode("invalid two-factor code")
        if not self._matches(account.two_factor_secret, code):
            raise InvalidCode("invalid two-factor code")
        return account

    async def disable(self, account_id: str, password: str) -> Account:
        account = self._load(account_id)
        if not await self.hasher.verify_async(password, account.password_hash):
            raise InvalidCredential("invalid password")
        if not account.two_factor_enabled and not account.two_factor_secret:
            return account
        updated = self.store.set_two_factor(account_id, secret=None, enabled=False)
        if updated is None:
            raise AccountNotFound("account not found")
        logger.info("two_factor_disabled", account_id=account_id)
        return updated

    def status(self, account_id: str) -> TwoFactorStatus:
        account = self._load(account_id)
        return TwoFactorStatus(
            enabled=account.two_factor_enabled,
            pending=bool(account.two_factor_secret) and not account.two_factor_enabled,
        )
