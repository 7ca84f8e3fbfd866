"""IMAP session wrapper for polling a mailbox.

Wraps ``imapclient.IMAPClient`` with the handful of operations the traversal
engine needs and translates library/socket failures into the service's
MailboxError hierarchy, one subclass per traversal step so the engine can
decide which failures are fatal for the account and which only for a folder.

Every round-trip carries a timeout: ``connect_seconds`` bounds the TCP/TLS
handshake, ``operation_seconds`` bounds each subsequent command.

All methods are blocking. The engine runs them in a worker thread and never
issues two commands on one session at the same time.

Usage:
    from autoreply.mail.imap import MailboxClient

    client = MailboxClient(account, password, connect_timeout=30, operation_timeout=60)
    client.connect()
    try:
        client.open_folder("INBOX")
        uids = client.search_unseen()
        raw = client.fetch(uids)
        client.mark_seen(uids[0])
        client.close_folder()
    finally:
        client.disconnect()
"""

from __future__ import annotations

import ssl
from typing import TYPE_CHECKING

from imapclient import SEEN, IMAPClient
from imapclient.exceptions import IMAPClientError
from imapclient.imapclient import SocketTimeout

from autoreply.core.errors import (
    FlagUpdateError,
    FolderOpenError,
    MailboxConnectionError,
    MailboxError,
    MailboxFetchError,
    MailboxSearchError,
)
from autoreply.core.logging import get_logger

if TYPE_CHECKING:
    from autoreply.config_schema import AccountConfig

logger = get_logger(__name__)

# Fetch the whole message without setting \Seen as a side effect
FETCH_BODY = b"BODY.PEEK[]"
FETCH_BODY_KEY = b"BODY[]"

# imaplib.IMAP4.error is the base of IMAPClientError; socket/TLS errors are OSError
_IMAP_ERRORS = (IMAPClientError, OSError)


def build_ssl_context(verify: bool) -> ssl.SSLContext:
    """Create the TLS context for an endpoint."""
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class MailboxClient:
    """One authenticated IMAP session for one account.

    Attributes:
        account: Account whose mailbox this session reads
        folder: Currently selected folder, or None
    """

    def __init__(
        self,
        account: AccountConfig,
        password: str,
        connect_timeout: float = 30.0,
        operation_timeout: float = 60.0,
    ):
        self.account = account
        self.folder: str | None = None
        self._password = password
        self._timeout = SocketTimeout(connect=connect_timeout, read=operation_timeout)
        self._client: IMAPClient | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    def connect(self) -> None:
        """Open the TLS session and log in.

        Raises:
            MailboxConnectionError: If the server is unreachable or rejects the login
        """
        endpoint = self.account.imap
        try:
            client = IMAPClient(
                endpoint.host,
                port=endpoint.port,
                ssl=True,
                ssl_context=build_ssl_context(endpoint.verify_tls),
                timeout=self._timeout,
            )
        except _IMAP_ERRORS as e:
            raise MailboxConnectionError(
                f"IMAP connection to {endpoint.host}:{endpoint.port} failed: {e}",
                account=self.account.email,
            ) from e

        try:
            client.login(self.account.email, self._password)
        except _IMAP_ERRORS as e:
            try:
                client.shutdown()
            except OSError:
                pass
            raise MailboxConnectionError(
                f"IMAP login to {endpoint.host} failed: {e}. Check the account password.",
                account=self.account.email,
            ) from e

        self._client = client
        logger.debug("imap_connected", account=self.account.email, host=endpoint.host)

    def open_folder(self, folder: str) -> None:
        """Select a folder read-write.

        Raises:
            FolderOpenError: If the folder is missing or cannot be selected
        """
        client = self._require_client()
        try:
            client.select_folder(folder, readonly=False)
        except _IMAP_ERRORS as e:
            raise FolderOpenError(
                f"Cannot open folder {folder}: {e}",
                account=self.account.email,
                folder=folder,
            ) from e
        self.folder = folder

    def search_unseen(self) -> list[int]:
        """UIDs of messages without the \\Seen flag in the selected folder.

        Raises:
            MailboxSearchError: If the search command fails
        """
        client = self._require_client()
        try:
            return sorted(int(uid) for uid in client.search(["UNSEEN"]))
        except _IMAP_ERRORS as e:
            raise MailboxSearchError(
                f"UNSEEN search failed in {self.folder}: {e}",
                account=self.account.email,
                folder=self.folder,
            ) from e

    def fetch(self, uids: list[int]) -> dict[int, bytes | None]:
        """Fetch full raw messages without marking them read.

        Returns:
            Mapping of every requested UID to its raw RFC 822 bytes, or None
            when the server returned no body for that UID

        Raises:
            MailboxFetchError: If the fetch command fails
        """
        client = self._require_client()
        if not uids:
            return {}
        try:
            response = client.fetch(uids, [FETCH_BODY])
        except _IMAP_ERRORS as e:
            raise MailboxFetchError(
                f"Fetching {len(uids)} messages from {self.folder} failed: {e}",
                account=self.account.email,
                folder=self.folder,
            ) from e

        result: dict[int, bytes | None] = {}
        for uid in uids:
            data = response.get(uid) or {}
            body = data.get(FETCH_BODY_KEY)
            result[uid] = bytes(body) if body is not None else None
        return result

    def mark_seen(self, uid: int) -> None:
        """Set the \\Seen flag on one message.

        Raises:
            FlagUpdateError: If the STORE command fails
        """
        client = self._require_client()
        try:
            client.add_flags([uid], [SEEN])
        except _IMAP_ERRORS as e:
            raise FlagUpdateError(
                f"Marking message {uid} read in {self.folder} failed: {e}",
                account=self.account.email,
                folder=self.folder,
            ) from e

    def close_folder(self) -> None:
        """Leave the selected folder without expunging.

        Uses UNSELECT where the server supports it. Otherwise the folder is
        re-selected read-only (EXAMINE) first, so the following CLOSE cannot
        remove messages flagged \\Deleted.

        Raises:
            MailboxError: If leaving the folder fails
        """
        client = self._require_client()
        folder, self.folder = self.folder, None
        if folder is None:
            return
        try:
            if client.has_capability("UNSELECT"):
                client.unselect_folder()
            else:
                client.select_folder(folder, readonly=True)
                client.close_folder()
        except _IMAP_ERRORS as e:
            raise MailboxError(
                f"Closing folder {folder} failed: {e}",
                account=self.account.email,
                folder=folder,
            ) from e

    def disconnect(self) -> None:
        """Log out and drop the connection. Safe to call when never connected.

        Raises:
            MailboxError: If LOGOUT fails (the socket is closed regardless)
        """
        client, self._client = self._client, None
        self.folder = None
        if client is None:
            return
        try:
            client.logout()
        except _IMAP_ERRORS as e:
            try:
                client.shutdown()
            except OSError:
                pass
            raise MailboxError(
                f"IMAP logout failed: {e}",
                account=self.account.email,
            ) from e

    def _require_client(self) -> IMAPClient:
        if self._client is None:
            raise MailboxError("IMAP session is not connected", account=self.account.email)
        return self._client
