from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

import structlog

# Keys whose values are credentials; matched as substrings of the lowercased key
_CREDENTIAL_MARKERS = ("password", "secret", "token", "api_key", "authorization")
# Keys matched exactly, since a substring match would also hit error_code/status_code
_CREDENTIAL_KEYS = frozenset({"code", "otp", "totp_code"})
_EMAIL_MARKER = "email"
# Identifiers of records, not credentials
_SAFE_KEYS = frozenset({"event", "token_id", "audit_event_id", "token_type"})

_REDACTED = "***"
_MAX_DEPTH = 4

_REQUEST_ID_PATTERN = re.compile(r"[A-Za-z0-9._:-]{1,128}")


def get_correlation_id() -> Optional[str]:
    """Correlation ID bound to the current request context, if any."""
    return structlog.contextvars.get_contextvars().get("correlation_id")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation ID for the current request and return it.

    Client supplied IDs are only reused when they are short and printable;
    anything else is replaced by a fresh UUID.
    """
    cid = correlation_id if correlation_id and _REQUEST_ID_PATTERN.fullmatch(correlation_id) else None
    cid = cid or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _REDACTED
    return f"{local[:1]}{_REDACTED}@{domain}"


def _is_credential_key(key: str) -> bool:
    lower_key = key.lower()
    if lower_key in _SAFE_KEYS:
        return False
    return lower_key in _CREDENTIAL_KEYS or any(m in lower_key for m in _CREDENTIAL_MARKERS)


def redact(key: str, value: Any, depth: int = 0) -> Any:
    """Redacted copy of ``value`` logged under ``key``.

    Credentials are masked whole, email addresses keep their first character
    and domain, and dicts or lists (audit ``details`` payloads) are walked.
    """
    if value is None:
        return None
    if _is_credential_key(key):
        return _REDACTED
    if _EMAIL_MARKER in key.lower() and isinstance(value, str):
        return mask_email(value)
    if depth >= _MAX_DEPTH:
        return value
    if isinstance(value, dict):
        return {k: redact(str(k), v, depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(key, item, depth + 1) for item in value]
    return value


def _redact_event(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = redact(key, event_dict[key])
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_event,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderer = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
