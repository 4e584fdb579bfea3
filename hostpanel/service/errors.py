from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized, invalid_code, invalid_token, token_expired (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Request is malformed or not valid in the current state."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredential(AuthenticationError):
    """Unknown identity or wrong password; the two are never distinguished."""
    pass


class InvalidCode(AuthenticationError):
    """One-time code did not verify."""
    error_code = "invalid_code"


class InvalidToken(AuthenticationError):
    """Session token is malformed, tampered with, or issued elsewhere."""
    error_code = "invalid_token"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class TokenExpired(SessionExpiredError):
    error_code = "token_expired"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class AccountNotFound(NotFoundError):
    pass


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateIdentity(ConflictError):
    """Username or email already belongs to another account."""
    pass


class AccountLocked(ServiceError):
    """Too many failed attempts; ``retry_after`` is seconds until unlock."""

    status_code = 423
    error_code = "account_locked"

    def __init__(self, message: str, *, retry_after: int, detail: Optional[dict] = None):
        super().__init__(message, detail={**(detail or {}), "retry_after": retry_after})
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidCredential",
    "InvalidCode",
    "InvalidToken",
    "SessionExpiredError",
    "TokenExpired",
    "ForbiddenError",
    "NotFoundError",
    "AccountNotFound",
    "ConflictError",
    "DuplicateIdentity",
    "AccountLocked",
    "ServerError",
]
