"""Mailbox traversal engine: one account, every configured folder.

Drives a single account through the polling state machine:

    Connect
      -> for each folder:
           OpenFolder -> Search -> [none]    -> CloseFolder
                                -> [results] -> Fetch -> per-message workflow -> CloseFolder
      -> Disconnect

Failure scope per step:
- Connect: fatal for the account, raised to the coordinator
- OpenFolder: WARNING, folder skipped
- Search / Fetch: ERROR, folder closed and skipped
- Parse / Send: ERROR, message skipped and left unseen for the next run
- Mark read / CloseFolder / Disconnect: WARNING, best-effort

Per-message workflow (run concurrently for one fetched batch):
1. Parse the raw message
2. Skip if the processed-message store already has (account, message_id)
3. Compose and send the reply
4. Record the message as processed
5. Mark it \\Seen

The IMAP session is not safe for concurrent commands, so every IMAP call is
serialized with an asyncio.Lock and run in a worker thread. SMTP sends use
their own connections and are not serialized.

Usage:
    from autoreply.engine.mailbox import MailboxTraversal

    traversal = MailboxTraversal(
        account=account,
        template=config.reply,
        store=store,
        ledger=ledger,
        folders=config.mailbox.folders,
        timezone=config.timezone,
        timeouts=config.timeouts,
    )
    result = await traversal.run()
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from autoreply.config_schema import TimeoutsConfig
from autoreply.core.errors import (
    DatabaseError,
    MailboxError,
    MessageParseError,
    ReplyDispatchError,
)
from autoreply.core.logging import get_logger
from autoreply.mail.imap import MailboxClient
from autoreply.mail.parsing import InboundMessage, parse_message
from autoreply.mail.reply import ReplyComposer
from autoreply.mail.smtp import ReplyDispatcher

if TYPE_CHECKING:
    from autoreply.config_schema import AccountConfig, ReplyTemplate
    from autoreply.core.ledger import LogLedger
    from autoreply.db.store import DatabaseStore

logger = get_logger(__name__)

DEFAULT_FOLDERS = ("INBOX", "Junk")

# (account, password, connect_timeout, operation_timeout) -> MailboxClient-like
ClientFactory = Callable[[Any, str, float, float], Any]
# (account, password, send_timeout) -> object with send(EmailMessage)
DispatcherFactory = Callable[[Any, str, float], Any]


@dataclass
class AccountResult:
    """Counts for one account's traversal."""

    account: str
    folders_opened: int = 0
    messages_found: int = 0
    replies_sent: int = 0
    skipped_duplicates: int = 0
    failures: int = 0


class MailboxTraversal:
    """Runs the polling state machine for one account.

    A traversal instance is single-use: construct one per account per run.

    Attributes:
        account: Account being processed
        folders: Folders visited, in order
    """

    def __init__(
        self,
        account: AccountConfig,
        template: ReplyTemplate,
        store: DatabaseStore,
        ledger: LogLedger,
        folders: list[str] | tuple[str, ...] = DEFAULT_FOLDERS,
        timezone: str = "UTC",
        timeouts: TimeoutsConfig | None = None,
        client_factory: ClientFactory | None = None,
        dispatcher_factory: DispatcherFactory | None = None,
    ):
        self.account = account
        self.folders = list(folders)
        self._store = store
        self._ledger = ledger
        self._timeouts = timeouts or TimeoutsConfig()
        self._client_factory = client_factory or MailboxClient
        self._dispatcher_factory = dispatcher_factory or ReplyDispatcher
        self._composer = ReplyComposer(account.email, template, timezone=timezone)
        self._imap_lock = asyncio.Lock()
        self._client: Any = None
        self._dispatcher: Any = None
        self._result = AccountResult(account=account.email)

    @property
    def email(self) -> str:
        return self.account.email

    # =========================================================================
    # Account level
    # =========================================================================

    async def run(self) -> AccountResult:
        """Traverse every folder of the account.

        Returns:
            AccountResult with per-account counts

        Raises:
            CredentialError: If the account password cannot be resolved
            MailboxConnectionError: If connecting or logging in fails
        """
        password = self.account.resolve_password()
        self._client = self._client_factory(
            self.account,
            password,
            self._timeouts.connect_seconds,
            self._timeouts.operation_seconds,
        )
        self._dispatcher = self._dispatcher_factory(
            self.account, password, self._timeouts.send_seconds
        )

        try:
            await self._imap(self._client.connect)
            self._ledger.info(f"Connected to IMAP server {self.account.imap.host}", self.email)

            for folder in self.folders:
                await self._visit_folder(folder)

            self._ledger.info(
                f"Account done, {self._result.replies_sent} replies sent in total", self.email
            )
        finally:
            await self._disconnect()

        logger.info(
            "account_traversal_complete",
            account=self.email,
            folders_opened=self._result.folders_opened,
            messages_found=self._result.messages_found,
            replies_sent=self._result.replies_sent,
            skipped_duplicates=self._result.skipped_duplicates,
            failures=self._result.failures,
        )
        return self._result

    async def _disconnect(self) -> None:
        was_connected = bool(getattr(self._client, "connected", False))
        try:
            await self._imap(self._client.disconnect)
        except MailboxError as e:
            self._ledger.warning(f"IMAP disconnect failed: {e}", self.email)
            return
        if was_connected:
            self._ledger.info("Disconnected from IMAP server", self.email)

    async def _imap(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run one blocking IMAP command, never two at once on the session."""
        async with self._imap_lock:
            return await asyncio.to_thread(func, *args)

    # =========================================================================
    # Folder level
    # =========================================================================

    async def _visit_folder(self, folder: str) -> None:
        try:
            await self._imap(self._client.open_folder, folder)
        except MailboxError as e:
            self._ledger.warning(f"Cannot open folder {folder}: {e}", self.email)
            return

        self._result.folders_opened += 1
        self._ledger.info(f"Opened folder {folder}", self.email)

        try:
            await self._process_folder(folder)
        finally:
            await self._close_folder(folder)

    async def _process_folder(self, folder: str) -> None:
        try:
            uids = await self._imap(self._client.search_unseen)
        except MailboxError as e:
            self._result.failures += 1
            self._ledger.error(f"Searching unseen messages in {folder} failed: {e}", self.email)
            return

        if not uids:
            self._ledger.info(f"No unseen messages in {folder}", self.email)
            return

        self._result.messages_found += len(uids)
        self._ledger.info(f"Found {len(uids)} unseen messages in {folder}", self.email)

        try:
            raw_messages = await self._imap(self._client.fetch, uids)
        except MailboxError as e:
            self._result.failures += 1
            self._ledger.error(f"Fetching messages from {folder} failed: {e}", self.email)
            return

        sent_before = self._result.replies_sent
        in_flight: set[str] = set()
        await asyncio.gather(
            *(
                self._handle_message(folder, uid, raw_messages.get(uid), in_flight)
                for uid in uids
            )
        )
        self._ledger.info(
            f"Folder {folder} done, {self._result.replies_sent - sent_before} replies sent",
            self.email,
        )

    async def _close_folder(self, folder: str) -> None:
        try:
            await self._imap(self._client.close_folder)
        except MailboxError as e:
            self._ledger.warning(f"Closing folder {folder} failed: {e}", self.email)

    # =========================================================================
    # Message level
    # =========================================================================

    async def _handle_message(
        self,
        folder: str,
        uid: int,
        raw: bytes | None,
        in_flight: set[str],
    ) -> None:
        """Per-message workflow. Never raises: the batch must finish before close."""
        try:
            message = parse_message(raw, folder, uid)
        except MessageParseError as e:
            self._result.failures += 1
            self._ledger.error(f"Failed to parse message {uid} in {folder}: {e}", self.email)
            return

        if not message.sender:
            self._result.failures += 1
            self._ledger.error(
                f"Message {uid} in {folder} ({message.subject}) has no sender address, skipped",
                self.email,
            )
            return

        if message.message_id in in_flight:
            self._result.skipped_duplicates += 1
            self._ledger.info(
                f"Message {message.message_id} appears twice in {folder}, skipped", self.email
            )
            return
        in_flight.add(message.message_id)

        try:
            await self._reply(message)
        except Exception as e:
            self._result.failures += 1
            logger.exception(
                "message_workflow_failed",
                account=self.email,
                folder=folder,
                uid=uid,
            )
            self._ledger.error(
                f"Unexpected error processing message from {message.sender} "
                f"({message.subject}) in {folder}: {e}",
                self.email,
            )

    async def _reply(self, message: InboundMessage) -> None:
        self._ledger.info(
            f"Processing message from {message.sender}: {message.subject}", self.email
        )

        try:
            already = await self._store.has(self.email, message.message_id)
        except DatabaseError as e:
            self._result.failures += 1
            self._ledger.error(
                f"Could not check whether message from {message.sender} "
                f"({message.subject}) was processed: {e}",
                self.email,
            )
            return

        if already:
            self._result.skipped_duplicates += 1
            self._ledger.info(
                f"Message {message.message_id} already processed, skipped", self.email
            )
            return

        reply = self._composer.compose(message)
        try:
            await asyncio.to_thread(self._dispatcher.send, reply)
        except ReplyDispatchError as e:
            self._result.failures += 1
            self._ledger.error(
                f"Failed to send reply to {message.sender} ({message.subject}): {e}",
                self.email,
            )
            return

        self._result.replies_sent += 1
        try:
            await self._store.record(
                self.email,
                message.message_id,
                sender=message.sender,
                subject=message.subject,
            )
        except DatabaseError as e:
            self._ledger.error(
                f"Reply sent to {message.sender} but recording message "
                f"{message.message_id} failed: {e}",
                self.email,
            )
        else:
            self._ledger.info(f"Reply sent to {message.sender}", self.email)

        # Marked read even when recording failed: the reply is already out
        try:
            await self._imap(self._client.mark_seen, message.uid)
        except MailboxError as e:
            self._ledger.warning(
                f"Marking message from {message.sender} read in {message.folder} failed: {e}",
                self.email,
            )
