"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state for concurrent access by the routes and the scheduler job.

Routes that need a component the lifespan could not build (for example
because config.yaml failed to load) get a 503 instead of a crash.

Usage:
    from autoreply.web.dependencies import get_ledger

    @router.get("/logs")
    async def list_logs(ledger: LogLedger = Depends(get_ledger)):
        return [entry.to_dict() for entry in ledger.all()]
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from autoreply.config_schema import AppConfig
    from autoreply.core.ledger import LogLedger
    from autoreply.db.store import DatabaseStore


def _require(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=503,
            detail=f"Service not initialized ({name} unavailable). Check config.yaml.",
        )
    return value


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    return _require(request, "store")


def get_config(request: Request) -> AppConfig:
    """Get the current AppConfig from app state."""
    return _require(request, "config")


def get_ledger(request: Request) -> LogLedger:
    """Get the LogLedger from app state."""
    return _require(request, "ledger")
