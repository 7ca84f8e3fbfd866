"""SMTP transmission of composed replies.

One connection per send: the dispatcher connects (implicit TLS or STARTTLS),
authenticates with the account credential, transmits, and quits. There is no
retry; a failed send leaves the original message unprocessed and unread, and
the next run tries again.

Usage:
    from autoreply.mail.smtp import ReplyDispatcher

    dispatcher = ReplyDispatcher(account, password, timeout=60)
    dispatcher.send(reply)  # blocking; the engine runs it in a worker thread
"""

from __future__ import annotations

import smtplib
from typing import TYPE_CHECKING

from autoreply.core.errors import ReplyDispatchError
from autoreply.core.logging import get_logger
from autoreply.mail.imap import build_ssl_context

if TYPE_CHECKING:
    from email.message import EmailMessage

    from autoreply.config_schema import AccountConfig

logger = get_logger(__name__)


class ReplyDispatcher:
    """Sends replies through an account's SMTP endpoint.

    Attributes:
        account: Account the replies are sent from
        timeout: Socket timeout for the whole SMTP exchange (seconds)
    """

    def __init__(self, account: AccountConfig, password: str, timeout: float = 60.0):
        self.account = account
        self.timeout = timeout
        self._password = password

    def _open(self) -> smtplib.SMTP:
        endpoint = self.account.smtp
        context = build_ssl_context(endpoint.verify_tls)
        if endpoint.security == "ssl":
            return smtplib.SMTP_SSL(
                endpoint.host, endpoint.port, timeout=self.timeout, context=context
            )
        smtp = smtplib.SMTP(endpoint.host, endpoint.port, timeout=self.timeout)
        try:
            smtp.starttls(context=context)
        except (smtplib.SMTPException, OSError):
            smtp.close()
            raise
        return smtp

    def send(self, message: EmailMessage) -> None:
        """Transmit one message.

        Raises:
            ReplyDispatchError: On any connection, authentication or
                transmission failure
        """
        recipient = str(message.get("To", ""))
        endpoint = self.account.smtp
        try:
            smtp = self._open()
            with smtp:
                smtp.login(self.account.email, self._password)
                refused = smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise ReplyDispatchError(
                f"Sending reply to {recipient} via {endpoint.host}:{endpoint.port} failed: {e}",
                recipient=recipient,
            ) from e

        if refused:
            raise ReplyDispatchError(
                f"SMTP server refused recipient(s): {', '.join(refused)}",
                recipient=recipient,
            )

        logger.debug(
            "reply_dispatched",
            account=self.account.email,
            recipient=recipient,
            host=endpoint.host,
        )
