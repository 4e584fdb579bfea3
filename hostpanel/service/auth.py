from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from hostpanel.logging import get_logger
from hostpanel.service.accounts import AccountService
from hostpanel.service.audit import AuditTrail
from hostpanel.service.errors import (
    AccountLocked,
    AccountNotFound,
    ForbiddenError,
    InvalidCode,
    InvalidCredential,
    InvalidToken,
)
from hostpanel.service.lockout import LockoutStateMachine
from hostpanel.service.passwords import PasswordHasherService
from hostpanel.service.tokens import SessionTokenIssuer
from hostpanel.service.totp import Enrollment, TwoFactorService, TwoFactorStatus
from hostpanel.storage.models import Account

logger = get_logger(__name__)


@dataclass
class AuthContext:
    account_id: str
    username: str
    token_id: str
    expires_at: datetime


@dataclass
class LoginResult:
    account_id: str
    requires_two_factor: bool = False
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    account: Optional[Account] = None


@dataclass
class RegistrationResult:
    account: Account
    token: str
    expires_at: datetime
    api_key: str
    api_secret: str


class AuthService:
    """Composes credentials, lockout, two-factor, tokens and auditing into login flows.

    A login moves from awaiting credentials either straight to authenticated,
    or through an intermediate two-factor step when the account has TOTP
    enabled. Only the account id crosses that intermediate step; no token is
    issued until the code verifies.
    """

    def __init__(
        self,
        accounts: AccountService,
        hasher: PasswordHasherService,
        lockout: LockoutStateMachine,
        two_factor: TwoFactorService,
        tokens: SessionTokenIssuer,
        audit: AuditTrail,
        *,
        allow_signup: bool = True,
    ) -> None:
        self.accounts = accounts
        self.hasher = hasher
        self.lockout = lockout
        self.two_factor = two_factor
        self.tokens = tokens
        self.audit = audit
        self.allow_signup = allow_signup

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RegistrationResult:
        if not self.allow_signup:
            raise ForbiddenError("signup is disabled")
        account = await self.accounts.create_account(username, email, password)
        issued = self.tokens.issue(account.id, account.username)
        self.audit.record(
            account.id,
            "User registered",
            "auth",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return RegistrationResult(
            account=account,
            token=issued.token,
            expires_at=issued.expires_at,
            api_key=account.api_key or "",
            api_secret=account.api_secret or "",
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        account = self.accounts.store.get_account_by_email(email or "")
        if account is None:
            await self.hasher.verify_dummy_async(password)
            logger.info("login_failed", reason="unknown_identity")
            raise InvalidCredential("invalid email or password")

        self._ensure_open(account, ip_address, user_agent)

        if not await self.hasher.verify_async(password, account.password_hash):
            self._register_failure(account, "password", ip_address, user_agent)
            raise InvalidCredential("invalid email or password")

        account = await self.accounts.rehash_if_needed(account, password)

        if account.two_factor_enabled:
            logger.info("login_two_factor_required", account_id=account.id)
            return LoginResult(account_id=account.id, requires_two_factor=True)

        return self._complete_login(account, ip_address, user_agent)

    async def verify_two_factor(
        self,
        account_id: str,
        code: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        account = self.accounts.find_by_id(account_id)
        self._ensure_open(account, ip_address, user_agent)
        try:
            self.two_factor.verify_login(account.id, code)
        except InvalidCode:
            self._register_failure(account, "two_factor", ip_address, user_agent)
            raise
        return self._complete_login(account, ip_address, user_agent)

    def _ensure_open(
        self, account: Account, ip_address: Optional[str], user_agent: Optional[str]
    ) -> None:
        try:
            self.lockout.ensure_open(account)
        except AccountLocked:
            logger.warning("login_blocked", account_id=account.id)
            self.audit.record(
                account.id,
                "Login blocked",
                "auth",
                "failed",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise

    def _register_failure(
        self,
        account: Account,
        stage: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        """Count the failure; raises ``AccountLocked`` if it tripped the lock."""
        updated = self.lockout.register_failure(account.id)
        logger.info(
            "login_failed",
            account_id=account.id,
            stage=stage,
            failed_login_count=updated.failed_login_count,
        )
        self.audit.record(
            account.id,
            "Login failed",
            "auth",
            "failed",
            ip_address=ip_address,
            user_agent=user_agent,
            detail={"stage": stage, "failed_login_count": updated.failed_login_count},
        )
        self.lockout.ensure_open(updated)

    def _complete_login(
        self, account: Account, ip_address: Optional[str], user_agent: Optional[str]
    ) -> LoginResult:
        account = self.lockout.register_success(account.id)
        issued = self.tokens.issue(account.id, account.username)
        self.audit.record(
            account.id,
            "User logged in",
            "auth",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("login_succeeded", account_id=account.id)
        return LoginResult(
            account_id=account.id,
            token=issued.token,
            expires_at=issued.expires_at,
            account=account,
        )

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        if not authorization:
            raise InvalidToken("missing bearer token")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise InvalidToken("missing bearer token")
        claims = self.tokens.verify(token.strip())
        try:
            account = self.accounts.find_by_id(claims.account_id)
        except AccountNotFound:
            raise InvalidToken("account no longer exists") from None
        return AuthContext(
            account_id=account.id,
            username=account.username,
            token_id=claims.token_id,
            expires_at=claims.expires_at,
        )

    def current_account(self, ctx: AuthContext) -> Account:
        return self.accounts.find_by_id(ctx.account_id)

    def update_profile(
        self,
        ctx: AuthContext,
        *,
        email: Optional[str] = None,
        locale: Optional[str] = None,
        timezone: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        account = self.accounts.update_profile(
            ctx.account_id, email=email, locale=locale, timezone=timezone
        )
        self.audit.record(
            account.id,
            "Profile updated",
            "auth",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return account

    async def change_password(
        self,
        ctx: AuthContext,
        current_password: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        account = await self.accounts.change_password(
            ctx.account_id, current_password, new_password
        )
        self.audit.record(
            account.id,
            "Password changed",
            "security",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return account

    def two_factor_status(self, ctx: AuthContext) -> TwoFactorStatus:
        return self.two_factor.status(ctx.account_id)

    def begin_two_factor(self, ctx: AuthContext) -> Enrollment:
        return self.two_factor.begin_enrollment(ctx.account_id)

    def confirm_two_factor(
        self,
        ctx: AuthContext,
        code: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        account = self.two_factor.confirm_enrollment(ctx.account_id, code)
        self.audit.record(
            account.id,
            "2FA enabled",
            "security",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return account

    async def disable_two_factor(
        self,
        ctx: AuthContext,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        account = await self.two_factor.disable(ctx.account_id, password)
        self.audit.record(
            account.id,
            "2FA disabled",
            "security",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return account

    def logout(
        self,
        ctx: AuthContext,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.audit.record(
            ctx.account_id,
            "User logged out",
            "auth",
            ip_address=ip_address,
            user_agent=user_agent,
        )
