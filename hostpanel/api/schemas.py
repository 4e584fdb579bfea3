from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from hostpanel.storage.models import Account, AuditEvent

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_code",
    "invalid_token",
    "token_expired",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "account_locked",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=64)
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)


class TwoFactorVerifyRequest(BaseModel):
    account_id: str = Field(..., max_length=64)
    code: str = Field(..., max_length=10)


class TwoFactorConfirmRequest(BaseModel):
    code: str = Field(..., max_length=10)


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=256)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=256)


class ProfileUpdateRequest(BaseModel):
    email: Optional[str] = Field(None, max_length=254)
    locale: Optional[str] = Field(None, max_length=10, description="Locale code (en or sw)")
    timezone: Optional[str] = Field(None, max_length=64, description="Timezone (e.g., Africa/Nairobi)")


class AccountResponse(BaseModel):
    id: str
    username: str
    email: str
    plan: str
    locale: str
    timezone: str
    two_factor_enabled: bool
    disk_usage: int
    disk_limit: int
    bandwidth_usage: int
    bandwidth_limit: int
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            username=account.username,
            email=account.email,
            plan=account.plan,
            locale=account.locale,
            timezone=account.timezone,
            two_factor_enabled=account.two_factor_enabled,
            disk_usage=account.disk_usage,
            disk_limit=account.disk_limit,
            bandwidth_usage=account.bandwidth_usage,
            bandwidth_limit=account.bandwidth_limit,
            last_login_at=account.last_login_at,
            created_at=account.created_at,
        )


class RegisterResponse(BaseModel):
    account: AccountResponse
    token: str
    expires_at: datetime
    api_key: str
    api_secret: str


class LoginResponse(BaseModel):
    account_id: str
    requires_two_factor: bool = False
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    account: Optional[AccountResponse] = None


class TwoFactorEnrollmentResponse(BaseModel):
    secret: str
    provisioning_uri: str


class TwoFactorStatusResponse(BaseModel):
    enabled: bool = Field(..., description="Whether two-factor login is currently enabled")
    pending: bool = Field(..., description="Whether a secret awaits confirmation")


class AuditEventResponse(BaseModel):
    id: str
    action: str
    category: str
    status: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[dict] = None
    created_at: datetime

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            action=event.action,
            category=event.category,
            status=event.status,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            details=event.details,
            created_at=event.created_at,
        )


class AuditEventListResponse(BaseModel):
    items: List[AuditEventResponse]


class AuditStatResponse(BaseModel):
    category: str
    count: int
    last_activity: Optional[datetime] = None


class AuditStatsResponse(BaseModel):
    items: List[AuditStatResponse]
