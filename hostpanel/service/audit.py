"""Security audit trail.

Audit writes are best effort: they never block or fail the operation being
audited. When a sink write fails the event is written to the local log instead.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Set

from hostpanel.logging import get_logger
from hostpanel.service.clock import Clock, utcnow
from hostpanel.storage.models import AuditEvent

if TYPE_CHECKING:
    from hostpanel.service.accounts import AccountStore

logger = get_logger(__name__)

CATEGORIES = ("auth", "security", "file", "domain", "billing", "system")
STATUSES = ("success", "failed", "pending")


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None:
        ...


class StoreAuditSink:
    """Writes audit events into the account store and enforces retention."""

    def __init__(
        self,
        store: "AccountStore",
        *,
        retention: timedelta = timedelta(days=90),
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.retention = retention
        self._clock = clock

    def record(self, event: AuditEvent) -> None:
        self.store.record_audit_event(event)

    def prune(self) -> int:
        cutoff = self._clock() - self.retention
        removed = self.store.prune_audit_events(cutoff)
        if removed:
            logger.info("audit_events_pruned", removed=removed, cutoff=cutoff.isoformat())
        return removed


class AuditTrail:
    def __init__(self, sink: AuditSink, store: "AccountStore", *, clock: Clock = utcnow) -> None:
        self.sink = sink
        self.store = store
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()

    def record(
        self,
        account_id: str,
        action: str,
        category: str,
        outcome: str = "success",
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """Queue an audit event and return immediately.

        Inside a running event loop the sink write happens on a worker thread as
        a tracked task; outside one it is attempted inline. Either way sink
        failures stay here.
        """
        if category not in CATEGORIES:
            raise ValueError(f"unknown audit category: {category}")
        if outcome not in STATUSES:
            raise ValueError(f"unknown audit status: {outcome}")
        event = AuditEvent(
            id=str(uuid.uuid4()),
            account_id=account_id,
            action=action,
            category=category,
            status=outcome,
            ip_address=ip_address,
            user_agent=user_agent,
            details=dict(detail) if detail else None,
            created_at=self._clock(),
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deliver(event)
            return event
        task = loop.create_task(asyncio.to_thread(self._deliver, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return event

    def _deliver(self, event: AuditEvent) -> None:
        try:
            self.sink.record(event)
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                error=str(exc),
                audit_event_id=event.id,
                account_id=event.account_id,
                action=event.action,
                category=event.category,
                status=event.status,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                details=event.details,
                created_at=event.created_at.isoformat(),
            )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # activity queries
    def list_events(
        self,
        account_id: str,
        *,
        limit: int = 50,
        category: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[AuditEvent]:
        return self.store.list_audit_events(
            account_id, limit=limit, category=category, status=status
        )

    def stats(self, account_id: str) -> List[Dict[str, Any]]:
        return self.store.audit_stats(account_id)
