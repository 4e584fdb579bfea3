from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

# Services take a clock so tests can pin or advance time
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


__all__ = ["Clock", "utcnow"]
