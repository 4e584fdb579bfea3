from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

DEFAULT_DISK_LIMIT = 1024 * 1024 * 1024  # 1 GiB
DEFAULT_BANDWIDTH_LIMIT = 2 * 1024 * 1024 * 1024  # 2 GiB

PLANS = ("FREE", "BASIC", "PRO", "BUSINESS")
LOCALES = ("en", "sw")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    username: str
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    last_login_at: Optional[datetime] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    plan: str = "FREE"
    locale: str = "en"
    timezone: str = "Africa/Nairobi"
    # Quota fields are owned here but consumed by the file and hosting subsystems
    disk_usage: int = 0
    disk_limit: int = DEFAULT_DISK_LIMIT
    bandwidth_usage: int = 0
    bandwidth_limit: int = DEFAULT_BANDWIDTH_LIMIT
    version: int = 1


@dataclass
class AuditEvent:
    id: str
    account_id: str
    action: str
    category: str
    status: str = "success"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict | None = None
    created_at: datetime = field(default_factory=_utcnow)
