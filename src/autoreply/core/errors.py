"""Custom exception types for the mail auto-reply service.

All exceptions follow the same message standard:
- What failed (specific operation or component)
- Where it failed (account, folder, message)
- Why it failed (the underlying condition)
- How to fix it (actionable guidance, where there is any)
"""


class AutoReplyError(Exception):
    """Base exception for all auto-reply service errors."""

    pass


class ConfigValidationError(AutoReplyError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(AutoReplyError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class CredentialError(AutoReplyError):
    """Raised when an account's password cannot be resolved.

    Attributes:
        account: Email address of the account with the missing credential
    """

    def __init__(self, message: str, account: str | None = None):
        super().__init__(message)
        self.account = account


class MailboxError(AutoReplyError):
    """Raised when an IMAP operation fails.

    Attributes:
        account: Email address of the mailbox owner
        folder: Folder the operation targeted (if any)
    """

    def __init__(
        self,
        message: str,
        account: str | None = None,
        folder: str | None = None,
    ):
        super().__init__(message)
        self.account = account
        self.folder = folder


class MailboxConnectionError(MailboxError):
    """Raised when the IMAP session cannot be established or authenticated.

    Fatal for the account's run; the coordinator moves on to the next account.
    """

    pass


class FolderOpenError(MailboxError):
    """Raised when a folder cannot be selected (missing, permission denied)."""

    pass


class MailboxSearchError(MailboxError):
    """Raised when the UNSEEN search fails for a folder."""

    pass


class MailboxFetchError(MailboxError):
    """Raised when fetching a batch of messages fails."""

    pass


class FlagUpdateError(MailboxError):
    """Raised when setting the \\Seen flag fails. Best-effort, never escalated."""

    pass


class MessageParseError(AutoReplyError):
    """Raised when a fetched message cannot be parsed.

    The message is skipped and left unseen so the next poll retries it.

    Attributes:
        uid: IMAP UID of the message that failed
    """

    def __init__(self, message: str, uid: int | None = None):
        super().__init__(message)
        self.uid = uid


class ReplyDispatchError(AutoReplyError):
    """Raised when the reply cannot be sent over SMTP.

    Attributes:
        recipient: Address the reply was addressed to
    """

    def __init__(self, message: str, recipient: str | None = None):
        super().__init__(message)
        self.recipient = recipient


class DatabaseError(AutoReplyError):
    """Raised when SQLite operations fail."""

    pass


class LedgerError(AutoReplyError):
    """Raised when the log ledger file cannot be read or removed."""

    pass
