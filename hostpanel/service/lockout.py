"""Failed-login counting and temporary account locks.

An account is either OPEN or LOCKED; LOCKED holds exactly while ``locked_until``
lies in the future. Failures are counted through compare-and-set writes on the
account ``version`` so concurrent attempts never lose an increment.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from hostpanel.config import Settings
from hostpanel.logging import get_logger
from hostpanel.service.clock import Clock, utcnow
from hostpanel.service.errors import AccountLocked, AccountNotFound, ServerError
from hostpanel.storage.models import Account

if TYPE_CHECKING:
    from hostpanel.service.accounts import AccountStore

logger = get_logger(__name__)


class LockState(str, Enum):
    OPEN = "open"
    LOCKED = "locked"


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = 5
    lock_duration: timedelta = timedelta(hours=1)
    max_retries: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            max_attempts=settings.lockout_max_attempts,
            lock_duration=timedelta(minutes=settings.lockout_duration_minutes),
        )


def lock_state(account: Account, now: datetime) -> LockState:
    if account.locked_until is not None and account.locked_until > now:
        return LockState.LOCKED
    return LockState.OPEN


def seconds_until_unlock(account: Account, now: datetime) -> int:
    if account.locked_until is None:
        return 0
    return max(0, math.ceil((account.locked_until - now).total_seconds()))


class LockoutStateMachine:
    def __init__(
        self,
        store: "AccountStore",
        policy: Optional[LockoutPolicy] = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy or LockoutPolicy()
        self._clock = clock

    def state(self, account: Account) -> LockState:
        return lock_state(account, self._clock())

    def is_locked(self, account: Account) -> bool:
        return self.state(account) is LockState.LOCKED

    def ensure_open(self, account: Account) -> None:
        now = self._clock()
        if lock_state(account, now) is LockState.LOCKED:
            raise AccountLocked(
                "account is temporarily locked",
                retry_after=seconds_until_unlock(account, now),
            )

    def register_failure(self, account_id: str) -> Account:
        """Count one failed attempt and lock once the threshold is reached.

        Attempts against an already locked account leave it untouched. A lock
        that has run out is forgotten, so counting starts again from zero.
        """

        tripped = False

        def transition(account: Account, now: datetime) -> Optional[dict]:
            nonlocal tripped
            tripped = False
            if lock_state(account, now) is LockState.LOCKED:
                return None
            expired = account.locked_until is not None
            count = (0 if expired else account.failed_login_count) + 1
            locked_until = None
            if count >= self.policy.max_attempts:
                locked_until = now + self.policy.lock_duration
                tripped = True
            return {"failed_login_count": count, "locked_until": locked_until}

        updated = self._apply(account_id, transition)
        if tripped:
            logger.warning(
                "account_locked",
                account_id=account_id,
                failed_login_count=updated.failed_login_count,
                locked_until=updated.locked_until.isoformat(),
            )
        return updated

    def register_success(self, account_id: str) -> Account:
        def transition(account: Account, now: datetime) -> Optional[dict]:
            if lock_state(account, now) is LockState.LOCKED:
                raise AccountLocked(
                    "account is temporarily locked",
                    retry_after=seconds_until_unlock(account, now),
                )
            return {"failed_login_count": 0, "locked_until": None, "last_login_at": now}

        return self._apply(account_id, transition)

    def _apply(
        self,
        account_id: str,
        transition: Callable[[Account, datetime], Optional[dict]],
    ) -> Account:
        for _ in range(self.policy.max_retries):
            account = self.store.get_account(account_id)
            if account is None:
                raise AccountNotFound("account not found")
            changes = transition(account, self._clock())
            if changes is None:
                return account
            updated = self.store.update_lockout(
                account_id, expected_version=account.version, **changes
            )
            if updated is not None:
                return updated
            logger.info("lockout_write_conflict", account_id=account_id)
        logger.error("lockout_retries_exhausted", account_id=account_id)
        raise ServerError("could not record login attempt, please retry")
