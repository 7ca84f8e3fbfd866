"""FastAPI application for the auto-reply service.

Creates the FastAPI app with:
- Lifespan context manager for dependency initialization and scheduler
- The JSON API router (runs, log ledger, health)

Scheduled runs execute via APScheduler's BackgroundScheduler in the same
process as uvicorn. The scheduler thread bridges to the async event loop via
run_coroutine_threadsafe, so scheduled and manual runs share one run lock and
never overlap.

Usage:
    from autoreply.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from fastapi import FastAPI

from autoreply.core.logging import get_logger

if TYPE_CHECKING:
    from autoreply.config_schema import AppConfig
    from autoreply.engine.coordinator import RunSummary, Trigger

logger = get_logger(__name__)

# Upper bound the scheduler thread waits for one run to finish
SCHEDULED_RUN_TIMEOUT_SECONDS = 1800


def _refresh_config(app: FastAPI) -> AppConfig | None:
    """Pick up config.yaml edits before a run when hot reload is enabled."""
    if getattr(app.state, "hot_reload", False):
        from autoreply.config import get_config, reload_config_if_changed

        if reload_config_if_changed():
            app.state.config = get_config()
    return app.state.config


async def run_with_lock(app: FastAPI, trigger: Trigger) -> RunSummary:
    """Run all accounts once, waiting for any run already in progress."""
    from autoreply.engine.triggers import run_manual, run_scheduled

    entry_point = run_manual if trigger == "manual" else run_scheduled

    async with app.state.run_lock:
        config = _refresh_config(app)
        return await entry_point(
            config,
            app.state.store,
            app.state.ledger,
            client_factory=getattr(app.state, "client_factory", None),
            dispatcher_factory=getattr(app.state, "dispatcher_factory", None),
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup, clean up on shutdown.

    On startup:
    1. Load config
    2. Open the log ledger
    3. Initialize database
    4. Start APScheduler

    On shutdown:
    - Stop APScheduler
    - Flush and close the log ledger
    """
    from apscheduler.schedulers.background import BackgroundScheduler

    from autoreply.config import get_config
    from autoreply.core.errors import ConfigLoadError, ConfigValidationError
    from autoreply.core.ledger import LogLedger
    from autoreply.db.store import DatabaseStore

    app.state.run_lock = asyncio.Lock()

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        # Start anyway so /api/health reports the problem
        app.state.config = None
        app.state.store = None
        app.state.ledger = None
        app.state.scheduler = None
        yield
        return

    app.state.config = config
    app.state.hot_reload = True

    # 2. Open the log ledger
    ledger = LogLedger(config.log_ledger.path, max_entries=config.log_ledger.max_entries)
    app.state.ledger = ledger

    # 3. Initialize database
    store = DatabaseStore(config.database.path)
    await store.initialize()
    app.state.store = store

    # 4. Start APScheduler
    loop = asyncio.get_running_loop()

    def _run_scheduled_sync():
        """Bridge the async run into the sync scheduler thread."""
        try:
            future = asyncio.run_coroutine_threadsafe(run_with_lock(app, "scheduled"), loop)
            future.result(timeout=SCHEDULED_RUN_TIMEOUT_SECONDS)
        except Exception as e:
            logger.error("scheduled_run_failed", error=str(e))

    scheduler = BackgroundScheduler()
    scheduler.add_job(
        _run_scheduled_sync,
        "interval",
        minutes=config.schedule.interval_minutes,
        id="process_emails",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now() + timedelta(seconds=30),
    )
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("scheduler_started", interval_minutes=config.schedule.interval_minutes)

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    logger.info("scheduler_stopped")
    ledger.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from autoreply.web.routes import api_router

    app = FastAPI(
        title="Mail Auto-Reply",
        description="Polls mailboxes and answers unseen messages with a configured reply",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(api_router)

    return app
