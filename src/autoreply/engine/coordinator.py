"""Run coordinator: one polling run across all active accounts.

Accounts are processed strictly one after another. A failure in one account
(bad credential, unreachable server, anything unexpected) is logged against
that account and the run moves on to the next.

Each run generates a UUID4 run_id that is bound as the structlog correlation
id, so every process log line of a run can be traced end to end.

The coordinator never raises: whatever happens, the caller gets a
RunSummary back.

Usage:
    from autoreply.engine.coordinator import RunCoordinator

    coordinator = RunCoordinator(store=store, ledger=ledger, folders=["INBOX", "Junk"])
    summary = await coordinator.run(config.accounts, config.reply, trigger="manual")
    print(summary.message)
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Literal

from autoreply.core.logging import get_logger, set_correlation_id
from autoreply.engine.mailbox import (
    DEFAULT_FOLDERS,
    AccountResult,
    ClientFactory,
    DispatcherFactory,
    MailboxTraversal,
)

if TYPE_CHECKING:
    from autoreply.config_schema import AccountConfig, ReplyTemplate, TimeoutsConfig
    from autoreply.core.ledger import LogLedger
    from autoreply.db.store import DatabaseStore

logger = get_logger(__name__)

Trigger = Literal["manual", "scheduled"]

TRIGGER_LABELS: dict[str, str] = {
    "manual": "Manual run",
    "scheduled": "Scheduled run",
}


@dataclass
class RunSummary:
    """Outcome of one run, returned to whichever trigger started it.

    ``success`` means the run went through its accounts; individual account
    failures are counted in ``accounts_failed`` and detailed in the ledger.
    ``error`` is only set when the run itself broke.
    """

    success: bool
    message: str
    trigger: str
    run_id: str
    error: str | None = None
    accounts_total: int = 0
    accounts_failed: int = 0
    replies_sent: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RunCoordinator:
    """Iterates active accounts and runs a MailboxTraversal for each.

    Attributes:
        folders: Folders visited per account, in order
        timezone: Timezone used for the quoted date in replies
    """

    def __init__(
        self,
        store: DatabaseStore,
        ledger: LogLedger,
        folders: list[str] | tuple[str, ...] = DEFAULT_FOLDERS,
        timezone: str = "UTC",
        timeouts: TimeoutsConfig | None = None,
        client_factory: ClientFactory | None = None,
        dispatcher_factory: DispatcherFactory | None = None,
    ):
        self._store = store
        self._ledger = ledger
        self.folders = list(folders)
        self.timezone = timezone
        self._timeouts = timeouts
        self._client_factory = client_factory
        self._dispatcher_factory = dispatcher_factory

    async def run(
        self,
        accounts: list[AccountConfig],
        template: ReplyTemplate | None,
        trigger: Trigger = "manual",
    ) -> RunSummary:
        """Execute one run.

        Args:
            accounts: Configured accounts; inactive ones are skipped
            template: Reply template snapshot, or None when not configured
            trigger: Origin of the run, only used to label log entries

        Returns:
            RunSummary (never raises)
        """
        run_id = str(uuid.uuid4())
        set_correlation_id(run_id)
        start_time = time.monotonic()
        label = TRIGGER_LABELS.get(trigger, trigger)

        summary = RunSummary(success=False, message="", trigger=trigger, run_id=run_id)
        logger.info("run_start", trigger=trigger)

        try:
            active = [account for account in accounts if account.active]

            if not active:
                summary.message = "No active accounts configured"
                self._ledger.warning(f"{label}: no active accounts configured, nothing to do")
                return summary

            if template is None:
                summary.message = "No reply template configured"
                self._ledger.warning(f"{label}: no reply template configured, nothing to do")
                return summary

            summary.accounts_total = len(active)
            self._ledger.info(f"{label}: start processing {len(active)} accounts")

            for account in active:
                result = await self._run_account(account, template)
                if result is None:
                    summary.accounts_failed += 1
                else:
                    summary.replies_sent += result.replies_sent

            self._ledger.info(
                f"{label}: all accounts done, {summary.replies_sent} replies sent"
            )
            summary.success = True
            summary.message = (
                f"Processed {summary.accounts_total} accounts, "
                f"{summary.replies_sent} replies sent"
            )
            if summary.accounts_failed:
                summary.message += f", {summary.accounts_failed} accounts failed"
            return summary

        except Exception as e:
            logger.exception("run_failed", trigger=trigger)
            summary.success = False
            summary.message = f"{label} failed"
            summary.error = str(e)
            self._ledger.error(f"{label} failed: {e}")
            return summary

        finally:
            summary.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "run_complete",
                trigger=trigger,
                success=summary.success,
                accounts_total=summary.accounts_total,
                accounts_failed=summary.accounts_failed,
                replies_sent=summary.replies_sent,
                duration_ms=summary.duration_ms,
            )
            set_correlation_id(None)

    async def _run_account(
        self, account: AccountConfig, template: ReplyTemplate
    ) -> AccountResult | None:
        """Run one account's traversal; None if it failed."""
        traversal = MailboxTraversal(
            account=account,
            template=template,
            store=self._store,
            ledger=self._ledger,
            folders=self.folders,
            timezone=self.timezone,
            timeouts=self._timeouts,
            client_factory=self._client_factory,
            dispatcher_factory=self._dispatcher_factory,
        )
        try:
            return await traversal.run()
        except Exception as e:
            logger.warning("account_failed", account=account.email, error=str(e))
            self._ledger.error(f"Processing account failed: {e}", account.email)
            return None
