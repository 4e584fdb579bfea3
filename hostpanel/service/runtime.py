from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from hostpanel.config import get_settings, reset_settings_cache
from hostpanel.logging import get_logger
from hostpanel.service.accounts import AccountService
from hostpanel.service.audit import AuditTrail, StoreAuditSink
from hostpanel.service.auth import AuthService
from hostpanel.service.lockout import LockoutPolicy, LockoutStateMachine
from hostpanel.service.passwords import PasswordHasherService
from hostpanel.service.tokens import SessionTokenIssuer, TokenConfig
from hostpanel.service.totp import TwoFactorService
from hostpanel.storage.memory import MemoryStore
from hostpanel.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )
        secret_key = self.settings.secret_encryption_key or self.settings.jwt_secret

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root
                    if self.settings.persist_memory_store
                    else None,
                    secret_key=secret_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, secret_key=secret_key)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.hasher = PasswordHasherService(self.settings)
        self.accounts = AccountService(self.store, self.hasher)
        self.lockout = LockoutStateMachine(
            self.store, LockoutPolicy.from_settings(self.settings)
        )
        self.two_factor = TwoFactorService(
            self.store,
            self.hasher,
            issuer=self.settings.totp_issuer,
            digits=self.settings.totp_digits,
            interval=self.settings.totp_interval_seconds,
            window=self.settings.totp_valid_window,
        )
        self.tokens = SessionTokenIssuer(TokenConfig.from_settings(self.settings))
        self.audit_sink = StoreAuditSink(
            self.store, retention=timedelta(days=self.settings.audit_retention_days)
        )
        self.audit = AuditTrail(self.audit_sink, self.store)
        self.auth = AuthService(
            self.accounts,
            self.hasher,
            self.lockout,
            self.two_factor,
            self.tokens,
            self.audit,
            allow_signup=self.settings.allow_signup,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            lockout_max_attempts=self.lockout.policy.max_attempts,
            session_token_ttl_minutes=self.settings.session_token_ttl_minutes,
        )

    async def close(self) -> None:
        await self.audit.drain()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
