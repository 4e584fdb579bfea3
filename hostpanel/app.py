from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from hostpanel.api.error_handling import register_exception_handlers
from hostpanel.api.routes import router
from hostpanel.logging import get_logger, set_correlation_id
from hostpanel.service.audit import StoreAuditSink

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5

_prune_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _prune_task
    from hostpanel.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _prune_task = asyncio.create_task(
            _run_audit_prune(
                runtime.audit_sink, runtime.settings.audit_prune_interval_seconds
            )
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _prune_task:
            _prune_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _prune_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Hosting Panel Accounts", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID for structured logs.

    Taken from the client's X-Request-ID header when present, otherwise
    generated, and echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from hostpanel.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    if hasattr(runtime.store, "verify_connection"):
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            db_ok = True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database")
            db_ok = False
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            db_ok = False
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "audit_pending": runtime.audit.pending,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _run_audit_prune(sink: StoreAuditSink, interval_seconds: int) -> None:
    """Background loop that drops audit events past the retention window."""

    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                await asyncio.to_thread(sink.prune)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("audit_prune_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("audit_prune_task_cancelled")


def create_app() -> FastAPI:
    return app
