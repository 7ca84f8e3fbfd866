"""JSON API routes for the auto-reply service.

Endpoints:
- GET    /api/logs             query the log ledger
- DELETE /api/logs             clear the log ledger
- POST   /api/process-emails   manual run
- GET    /api/process-emails   scheduled run (for external cron callers)
- GET    /api/health           liveness and component status

All routes use FastAPI dependency injection to access shared state.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from autoreply.config_schema import AppConfig
from autoreply.core.errors import DatabaseError, LedgerError
from autoreply.core.ledger import LOG_LEVELS, LogLedger
from autoreply.core.logging import get_logger
from autoreply.db.store import DatabaseStore
from autoreply.engine.coordinator import Trigger
from autoreply.web.dependencies import get_config, get_ledger, get_store

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Log ledger
# ---------------------------------------------------------------------------


@api_router.get("/logs")
async def list_logs(
    level: str | None = Query(default=None, description="INFO, WARNING or ERROR"),
    account: str | None = Query(default=None, description="Email address"),
    limit: int | None = Query(default=None, ge=0, description="Most recent N entries"),
    ledger: LogLedger = Depends(get_ledger),
):
    """Return ledger entries, most recent first.

    Filters are not combined: level wins over account, account over limit.
    """
    if level:
        normalized = level.upper()
        if normalized not in LOG_LEVELS:
            raise HTTPException(
                status_code=422,
                detail=f"Unknown level '{level}'. Use one of: {', '.join(LOG_LEVELS)}",
            )
        entries = ledger.by_level(normalized)
    elif account:
        entries = ledger.by_account(account)
    elif limit is not None:
        entries = ledger.recent(limit)
    else:
        entries = ledger.all()

    return [entry.to_dict() for entry in entries]


@api_router.delete("/logs")
async def clear_logs(ledger: LogLedger = Depends(get_ledger)):
    """Delete every ledger entry and the mirror file."""
    try:
        ledger.clear()
    except LedgerError as e:
        logger.error("ledger_clear_failed", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to clear logs: {e}") from None
    return {"success": True, "message": "Logs cleared"}


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


async def _trigger_run(request: Request, trigger: Trigger) -> JSONResponse:
    from autoreply.web.app import run_with_lock

    summary = await run_with_lock(request.app, trigger)
    return JSONResponse(
        content=summary.to_dict(),
        status_code=500 if summary.error else 200,
    )


@api_router.post("/process-emails")
async def process_emails_manual(
    request: Request,
    config: AppConfig = Depends(get_config),
    store: DatabaseStore = Depends(get_store),
    ledger: LogLedger = Depends(get_ledger),
):
    """Run all active accounts now."""
    return await _trigger_run(request, "manual")


@api_router.get("/process-emails")
async def process_emails_scheduled(
    request: Request,
    config: AppConfig = Depends(get_config),
    store: DatabaseStore = Depends(get_store),
    ledger: LogLedger = Depends(get_ledger),
):
    """Run all active accounts, labeled as a scheduled run (cron entry point)."""
    return await _trigger_run(request, "scheduled")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for Docker and monitoring."""
    state = request.app.state
    config = getattr(state, "config", None)
    store = getattr(state, "store", None)
    ledger = getattr(state, "ledger", None)
    scheduler = getattr(state, "scheduler", None)

    processed = None
    if store is not None:
        try:
            processed = await store.count_processed()
        except DatabaseError as e:
            logger.warning("health_count_failed", error=str(e))

    healthy = config is not None and store is not None and ledger is not None
    return {
        "status": "healthy" if healthy else "degraded",
        "active_accounts": len(config.active_accounts) if config else 0,
        "reply_configured": bool(config and config.reply),
        "scheduler_running": bool(scheduler and scheduler.running),
        "ledger_entries": len(ledger) if ledger is not None else 0,
        "processed_messages": processed,
        "version": "0.1.0",
    }
