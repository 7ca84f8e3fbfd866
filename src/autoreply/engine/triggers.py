"""Manual and scheduled entry points for a run.

Both triggers read the accounts, folders, timeouts and reply template from
the current configuration and hand them to a RunCoordinator. They behave
identically; only the origin label in the log ledger differs.

Usage:
    from autoreply.engine.triggers import run_manual, run_scheduled

    summary = await run_manual(config, store, ledger)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from autoreply.engine.coordinator import RunCoordinator, RunSummary, Trigger

if TYPE_CHECKING:
    from autoreply.config_schema import AppConfig
    from autoreply.core.ledger import LogLedger
    from autoreply.db.store import DatabaseStore
    from autoreply.engine.mailbox import ClientFactory, DispatcherFactory


def build_coordinator(
    config: AppConfig,
    store: DatabaseStore,
    ledger: LogLedger,
    client_factory: ClientFactory | None = None,
    dispatcher_factory: DispatcherFactory | None = None,
) -> RunCoordinator:
    """Create a coordinator wired to the configured folders and timeouts."""
    return RunCoordinator(
        store=store,
        ledger=ledger,
        folders=config.mailbox.folders,
        timezone=config.timezone,
        timeouts=config.timeouts,
        client_factory=client_factory,
        dispatcher_factory=dispatcher_factory,
    )


async def run_from_config(
    config: AppConfig,
    store: DatabaseStore,
    ledger: LogLedger,
    trigger: Trigger,
    client_factory: ClientFactory | None = None,
    dispatcher_factory: DispatcherFactory | None = None,
) -> RunSummary:
    coordinator = build_coordinator(config, store, ledger, client_factory, dispatcher_factory)
    return await coordinator.run(config.accounts, config.reply, trigger=trigger)


async def run_manual(
    config: AppConfig,
    store: DatabaseStore,
    ledger: LogLedger,
    client_factory: ClientFactory | None = None,
    dispatcher_factory: DispatcherFactory | None = None,
) -> RunSummary:
    """On-demand run (CLI ``run --once``, ``POST /api/process-emails``)."""
    return await run_from_config(
        config, store, ledger, "manual", client_factory, dispatcher_factory
    )


async def run_scheduled(
    config: AppConfig,
    store: DatabaseStore,
    ledger: LogLedger,
    client_factory: ClientFactory | None = None,
    dispatcher_factory: DispatcherFactory | None = None,
) -> RunSummary:
    """Interval run (scheduler job, ``GET /api/process-emails``)."""
    return await run_from_config(
        config, store, ledger, "scheduled", client_factory, dispatcher_factory
    )
