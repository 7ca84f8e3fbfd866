"""Pytest fixtures and configuration for auto-reply tests.

Provides common fixtures for configuration, ledgers, and an in-memory
mailbox/SMTP pair that the traversal engine can drive without a network.
"""

import os
from collections import defaultdict
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Generator

import pytest

from autoreply.config import reset_config
from autoreply.config_schema import AccountConfig, AppConfig, ReplyTemplate
from autoreply.core.errors import (
    FlagUpdateError,
    FolderOpenError,
    MailboxConnectionError,
    MailboxError,
    MailboxFetchError,
    MailboxSearchError,
    ReplyDispatchError,
)
from autoreply.core.ledger import LogLedger
from autoreply.db.store import DatabaseStore

ACCOUNT_EMAIL = "support@example.com"


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------


def make_raw_message(
    message_id: str | None = "<msg-1@mail.example.com>",
    sender: str | None = "Alice Smith <alice@example.com>",
    subject: str | None = "Question about my order",
    body: str | None = "Hello,\nwhere is my order?",
    html: str | None = None,
    date: str | None = "Mon, 19 Oct 2026 02:00:00 +0000",
    to: str = ACCOUNT_EMAIL,
) -> bytes:
    """Build raw RFC 822 bytes the way an IMAP server would return them."""
    msg = EmailMessage()
    if sender is not None:
        msg["From"] = sender
    msg["To"] = to
    if subject is not None:
        msg["Subject"] = subject
    if date is not None:
        msg["Date"] = date
    if message_id is not None:
        msg["Message-ID"] = message_id

    if body is not None:
        msg.set_content(body)
        if html is not None:
            msg.add_alternative(html, subtype="html")
    elif html is not None:
        msg.set_content(html, subtype="html")
    return msg.as_bytes()


def make_raw_headers_message(headers: list[tuple[str, str]], body: str = "Hello") -> bytes:
    """Build raw bytes with header values written verbatim (e.g. pre-encoded words)."""
    lines = [f"{name}: {value}" for name, value in headers]
    lines += ["Content-Type: text/plain; charset=utf-8", "", body, ""]
    return "\r\n".join(lines).encode("utf-8")


# ---------------------------------------------------------------------------
# Fake IMAP mailbox
# ---------------------------------------------------------------------------


class FakeMailbox:
    """In-memory server state for one account, with failure switches."""

    def __init__(self, folders: dict[str, list[bytes | None]] | None = None):
        self.messages: dict[str, dict[int, bytes | None]] = {}
        self.seen: dict[str, set[int]] = defaultdict(set)
        self.calls: list[tuple[Any, ...]] = []

        self.fail_connect = False
        self.fail_open: set[str] = set()
        self.fail_search: set[str] = set()
        self.fail_fetch: set[str] = set()
        self.fail_flag = False
        self.fail_close = False
        self.fail_logout = False

        for folder, raws in (folders or {}).items():
            self.messages[folder] = {}
            for raw in raws:
                self.add(folder, raw)

    def add(self, folder: str, raw: bytes | None) -> int:
        box = self.messages.setdefault(folder, {})
        uid = max(box, default=0) + 1
        box[uid] = raw
        return uid

    def mark_all_unseen(self) -> None:
        self.seen.clear()

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def client(self, account, password, connect_timeout, operation_timeout):
        return FakeMailboxClient(self, account)


class FakeMailboxClient:
    """Implements the MailboxClient interface against a FakeMailbox."""

    def __init__(self, mailbox: FakeMailbox, account: AccountConfig):
        self.mailbox = mailbox
        self.account = account
        self.folder: str | None = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        self.mailbox.calls.append(("connect",))
        if self.mailbox.fail_connect:
            raise MailboxConnectionError("login rejected", account=self.account.email)
        self._connected = True

    def open_folder(self, folder: str) -> None:
        self.mailbox.calls.append(("open_folder", folder))
        if folder in self.mailbox.fail_open or folder not in self.mailbox.messages:
            raise FolderOpenError(f"no such folder {folder}", account=self.account.email)
        self.folder = folder

    def search_unseen(self) -> list[int]:
        self.mailbox.calls.append(("search_unseen", self.folder))
        if self.folder in self.mailbox.fail_search:
            raise MailboxSearchError("search failed", account=self.account.email)
        box = self.mailbox.messages[self.folder]
        return [uid for uid in sorted(box) if uid not in self.mailbox.seen[self.folder]]

    def fetch(self, uids: list[int]) -> dict[int, bytes | None]:
        self.mailbox.calls.append(("fetch", self.folder, tuple(uids)))
        if self.folder in self.mailbox.fail_fetch:
            raise MailboxFetchError("fetch failed", account=self.account.email)
        box = self.mailbox.messages[self.folder]
        return {uid: box.get(uid) for uid in uids}

    def mark_seen(self, uid: int) -> None:
        self.mailbox.calls.append(("mark_seen", self.folder, uid))
        if self.mailbox.fail_flag:
            raise FlagUpdateError("store failed", account=self.account.email)
        self.mailbox.seen[self.folder].add(uid)

    def close_folder(self) -> None:
        self.mailbox.calls.append(("close_folder", self.folder))
        self.folder = None
        if self.mailbox.fail_close:
            raise MailboxError("close failed", account=self.account.email)

    def disconnect(self) -> None:
        self.mailbox.calls.append(("disconnect",))
        was_connected, self._connected = self._connected, False
        if was_connected and self.mailbox.fail_logout:
            raise MailboxError("logout failed", account=self.account.email)


class FakeMailboxes:
    """Client factory routing each account to its own FakeMailbox."""

    def __init__(self, mailboxes: dict[str, FakeMailbox]):
        self.mailboxes = mailboxes
        self.created: list[str] = []

    def __call__(self, account, password, connect_timeout, operation_timeout):
        self.created.append(account.email)
        return self.mailboxes[account.email].client(
            account, password, connect_timeout, operation_timeout
        )


class FakeDispatcher:
    """Records sent replies instead of talking to an SMTP server."""

    def __init__(self, fail_for: set[str] | None = None):
        self.fail_for = fail_for or set()
        self.sent: list[EmailMessage] = []

    def __call__(self, account, password, timeout):
        return self

    def send(self, message: EmailMessage) -> None:
        recipient = str(message["To"])
        if recipient in self.fail_for:
            raise ReplyDispatchError(f"550 mailbox unavailable: {recipient}", recipient=recipient)
        self.sent.append(message)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def sample_config_yaml(tmp_path: Path) -> str:
    """Return a minimal valid config.yaml content with paths under tmp_path."""
    return f"""
schema_version: 1

timezone: "Asia/Shanghai"

accounts:
  - email: "{ACCOUNT_EMAIL}"
    imap:
      host: "imap.example.com"
    smtp:
      host: "smtp.example.com"
    password: "secret"

reply:
  content: "Thank you for your message. We will get back to you soon."
  sender_name: "Support Team"

log_ledger:
  path: "{tmp_path / 'logs' / 'app.log'}"
  max_entries: 100

database:
  path: "{tmp_path / 'data' / 'autoreply.db'}"
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "timezone": "Asia/Shanghai",
        "accounts": [
            {
                "email": ACCOUNT_EMAIL,
                "imap": {"host": "imap.example.com"},
                "smtp": {"host": "smtp.example.com"},
                "password": "secret",
            }
        ],
        "reply": {
            "content": "Thank you for your message. We will get back to you soon.",
            "sender_name": "Support Team",
        },
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the AUTOREPLY_CONFIG_PATH environment variable."""
    old_value = os.environ.get("AUTOREPLY_CONFIG_PATH")
    os.environ["AUTOREPLY_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["AUTOREPLY_CONFIG_PATH"]
    else:
        os.environ["AUTOREPLY_CONFIG_PATH"] = old_value


@pytest.fixture
def account() -> AccountConfig:
    """Return an active account with an inline password."""
    return AccountConfig(
        email=ACCOUNT_EMAIL,
        imap={"host": "imap.example.com"},
        smtp={"host": "smtp.example.com"},
        password="secret",
    )


@pytest.fixture
def template() -> ReplyTemplate:
    """Return a reply template with a display name and no fixed subject."""
    return ReplyTemplate(
        content="Thank you for your message. We will get back to you soon.",
        sender_name="Support Team",
    )


@pytest.fixture
def ledger(tmp_path: Path) -> Generator[LogLedger, None, None]:
    """Return a LogLedger mirrored under tmp_path, closed after the test."""
    log = LogLedger(tmp_path / "logs" / "app.log", max_entries=1000)
    yield log
    log.close()


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized DatabaseStore."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    """Return a dispatcher that accepts every reply."""
    return FakeDispatcher()
