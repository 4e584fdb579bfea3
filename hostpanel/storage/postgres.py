from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from hostpanel.logging import get_logger
from hostpanel.storage.common import (
    PROFILE_FIELDS,
    SecretCipher,
    check_two_factor_invariant,
    normalize_email,
)
from hostpanel.storage.errors import ConstraintViolation, StoreUnavailable
from hostpanel.storage.models import Account, AuditEvent

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_secret TEXT,
        last_login_at TIMESTAMPTZ,
        api_key TEXT,
        api_secret TEXT,
        plan TEXT NOT NULL DEFAULT 'FREE',
        locale TEXT NOT NULL DEFAULT 'en',
        timezone TEXT NOT NULL DEFAULT 'Africa/Nairobi',
        disk_usage BIGINT NOT NULL DEFAULT 0,
        disk_limit BIGINT NOT NULL,
        bandwidth_usage BIGINT NOT NULL DEFAULT 0,
        bandwidth_limit BIGINT NOT NULL,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT account_username_key UNIQUE (username),
        CONSTRAINT account_email_key UNIQUE (email),
        CONSTRAINT account_api_key_key UNIQUE (api_key),
        CONSTRAINT account_two_factor_chk
            CHECK (NOT two_factor_enabled OR two_factor_secret IS NOT NULL)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        action TEXT NOT NULL,
        category TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'success',
        ip_address TEXT,
        user_agent TEXT,
        details JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS audit_event_account_created_idx
        ON audit_event (account_id, created_at DESC)
    """,
)

_UNIQUE_FIELDS = {
    "account_pkey": "id",
    "account_username_key": "username",
    "account_email_key": "email",
    "account_api_key_key": "api_key",
}

_ACCOUNT_COLUMNS = (
    "id",
    "username",
    "email",
    "password_hash",
    "failed_login_count",
    "locked_until",
    "two_factor_enabled",
    "two_factor_secret",
    "last_login_at",
    "api_key",
    "api_secret",
    "plan",
    "locale",
    "timezone",
    "disk_usage",
    "disk_limit",
    "bandwidth_usage",
    "bandwidth_limit",
    "version",
    "created_at",
    "updated_at",
)


class PostgresStore:
    """Postgres-backed account store; every account write is version-checked."""

    def __init__(self, dsn: str, *, secret_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(secret_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def _row_to_account(self, row: Optional[Dict[str, Any]]) -> Optional[Account]:
        if not row:
            return None
        data = {name: row[name] for name in _ACCOUNT_COLUMNS}
        data["two_factor_secret"] = self._cipher.decrypt(row.get("two_factor_secret"))
        return Account(**data)

    @staticmethod
    def _row_to_event(row: Dict[str, Any]) -> AuditEvent:
        details = row.get("details")
        if isinstance(details, str):
            details = json.loads(details)
        return AuditEvent(
            id=row["id"],
            account_id=row["account_id"],
            action=row["action"],
            category=row["category"],
            status=row["status"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            details=details,
            created_at=row["created_at"],
        )

    @staticmethod
    def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None) or ""
        field = _UNIQUE_FIELDS.get(constraint, constraint or "unknown")
        return ConstraintViolation(f"{field} already exists", {"field": field})

    def _fetch_account(self, where: str, value: Any) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM account WHERE {where} = %s", (value,)).fetchone()
        return self._row_to_account(row)

    # accounts
    def create_account(self, account: Account) -> Account:
        check_two_factor_invariant(account.two_factor_secret, account.two_factor_enabled)
        values = {name: getattr(account, name) for name in _ACCOUNT_COLUMNS}
        values["email"] = normalize_email(account.email)
        values["two_factor_secret"] = self._cipher.encrypt(account.two_factor_secret)
        values["version"] = 1
        columns = ", ".join(_ACCOUNT_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_ACCOUNT_COLUMNS))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO account ({columns}) VALUES ({placeholders}) RETURNING *",
                    tuple(values[name] for name in _ACCOUNT_COLUMNS),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._unique_violation(exc) from exc
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id", account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("email", normalize_email(email))

    def get_account_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_account("username", username)

    def update_profile(self, account_id: str, fields: Dict[str, Any]) -> Optional[Account]:
        unknown = set(fields) - PROFILE_FIELDS
        if unknown:
            raise ValueError(f"unsupported profile fields: {sorted(unknown)}")
        if not fields:
            return self.get_account(account_id)
        updates = dict(fields)
        if "email" in updates:
            updates["email"] = normalize_email(updates["email"])
        assignments = ", ".join(f"{name} = %s" for name in updates)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE account
                    SET {assignments}, version = version + 1, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (*updates.values(), account_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._unique_violation(exc) from exc
        return self._row_to_account(row)

    def set_password_hash(self, account_id: str, password_hash: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET password_hash = %s, version = version + 1, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, account_id),
            ).fetchone()
        return self._row_to_account(row)

    def set_two_factor(
        self,
        account_id: str,
        *,
        secret: Optional[str],
        enabled: bool,
        expected_version: Optional[int] = None,
    ) -> Optional[Account]:
        check_two_factor_invariant(secret, enabled)
        query = """
            UPDATE account
            SET two_factor_secret = %s, two_factor_enabled = %s,
                version = version + 1, updated_at = now()
            WHERE id = %s
        """
        params: tuple = (self._cipher.encrypt(secret), enabled, account_id)
        if expected_version is not None:
            query += " AND version = %s"
            params = (*params, expected_version)
        with self._connect() as conn:
            row = conn.execute(query + " RETURNING *", params).fetchone()
        return self._row_to_account(row)

    def update_lockout(
        self,
        account_id: str,
        *,
        expected_version: int,
        failed_login_count: int,
        locked_until: Optional[datetime],
        last_login_at: Optional[datetime] = None,
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET failed_login_count = %s,
                    locked_until = %s,
                    last_login_at = COALESCE(%s, last_login_at),
                    version = version + 1,
                    updated_at = now()
                WHERE id = %s AND version = %s
                RETURNING *
                """,
                (failed_login_count, locked_until, last_login_at, account_id, expected_version),
            ).fetchone()
        return self._row_to_account(row)

    # audit trail
    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event
                    (id, account_id, action, category, status, ip_address, user_agent, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.account_id,
                    event.action,
                    event.category,
                    event.status,
                    event.ip_address,
                    event.user_agent,
                    json.dumps(event.details) if event.details is not None else None,
                    event.created_at,
                ),
            )

    def list_audit_events(
        self,
        account_id: str,
        *,
        limit: int = 50,
        category: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[AuditEvent]:
        clauses = ["account_id = %s"]
        params: List[Any] = [account_id]
        if category:
            clauses.append("category = %s")
            params.append(category)
        if status:
            clauses.append("status = %s")
            params.append(status)
        params.append(max(limit, 0))
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM audit_event
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at DESC
                LIMIT %s
                """,
                tuple(params),
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def audit_stats(self, account_id: str) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT category, count(*) AS count, max(created_at) AS last_activity
                FROM audit_event
                WHERE account_id = %s
                GROUP BY category
                ORDER BY count DESC
                """,
                (account_id,),
            ).fetchall()
        return [
            {
                "category": row["category"],
                "count": int(row["count"]),
                "last_activity": row["last_activity"],
            }
            for row in rows
        ]

    def prune_audit_events(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM audit_event WHERE created_at < %s", (before,))
            return cur.rowcount
