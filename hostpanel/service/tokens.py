from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from hostpanel.config import Settings
from hostpanel.logging import get_logger
from hostpanel.service.clock import Clock, utcnow
from hostpanel.service.errors import InvalidToken, TokenExpired

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}
_TOKEN_TYPE = "session"


@dataclass(frozen=True)
class TokenConfig:
    secret: str
    issuer: str
    audience: str
    ttl: timedelta
    leeway: timedelta = timedelta(0)

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("token signing secret must not be empty")
        if self.ttl <= timedelta(0):
            raise ValueError("token ttl must be positive")

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenConfig":
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl=timedelta(minutes=settings.session_token_ttl_minutes),
            leeway=timedelta(seconds=settings.token_leeway_seconds),
        )


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    account_id: str
    username: str
    token_id: str
    issued_at: datetime
    expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _dump(obj: dict[str, Any]) -> str:
    return _encode_segment(json.dumps(obj, separators=(",", ":")).encode())


class SessionTokenIssuer:
    """Signs and checks HS256 session tokens.

    Everything it needs arrives through ``TokenConfig``; verification is pure
    and keeps no revocation state.
    """

    def __init__(self, config: TokenConfig, *, clock: Clock = utcnow) -> None:
        self.config = config
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(
                self.config.secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def issue(self, account_id: str, username: str) -> IssuedToken:
        now = self._clock()
        expires_at = now + self.config.ttl
        token_id = str(uuid.uuid4())
        payload = {
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "sub": account_id,
            "username": username,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": token_id,
            "token_type": _TOKEN_TYPE,
        }
        signing_input = f"{_dump(_HEADER)}.{_dump(payload)}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return IssuedToken(
            token=token,
            token_id=token_id,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def verify(self, token: str) -> TokenClaims:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidToken("malformed token") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise InvalidToken("malformed token") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidToken("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidToken("bad token signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken("malformed token") from None
        if not isinstance(payload, dict):
            raise InvalidToken("malformed token")

        if payload.get("iss") != self.config.issuer:
            raise InvalidToken("unexpected token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.config.audience in aud
        else:
            valid_aud = aud == self.config.audience
        if not valid_aud:
            raise InvalidToken("unexpected token audience")
        if payload.get("token_type") != _TOKEN_TYPE:
            raise InvalidToken("unexpected token type")

        try:
            exp = float(payload["exp"])
            iat = float(payload.get("iat", 0))
            account_id = str(payload["sub"])
            token_id = str(payload["jti"])
            expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
            issued_at = datetime.fromtimestamp(iat, tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            raise InvalidToken("malformed token claims") from None

        if self._clock() >= expires_at + self.config.leeway:
            raise TokenExpired("session token has expired")

        return TokenClaims(
            account_id=account_id,
            username=str(payload.get("username", "")),
            token_id=token_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )
