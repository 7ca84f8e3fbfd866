"""Parse fetched RFC 822 messages into InboundMessage records.

Only the fields the reply workflow needs are extracted. Missing headers get
defaults instead of failing the message:
- Message-ID: synthesized from folder, current time and UID
- Subject: "(no subject)"
- Date: now
- From display name: the sender address

The body prefers text/plain and falls back to text/html.

HTML handling uses the ``regex`` library with a match timeout, since message
bodies are untrusted input.

Usage:
    from autoreply.mail.parsing import parse_message

    message = parse_message(raw_bytes, folder="INBOX", uid=42)
    print(message.sender, message.subject)
"""

from __future__ import annotations

import html
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

import regex

from autoreply.core.errors import MessageParseError
from autoreply.core.logging import get_logger

logger = get_logger(__name__)

NO_SUBJECT = "(no subject)"

# Regex timeout in seconds for operations on message content
REGEX_TIMEOUT = 1.0

HTML_BREAK_PATTERN = regex.compile(r"<\s*(br|/p|/div|/li|/tr|/h[1-6])\b[^>]*>", regex.IGNORECASE)
HTML_DROP_PATTERN = regex.compile(
    r"<\s*(script|style|head)\b.*?<\s*/\s*\1\s*>",
    regex.IGNORECASE | regex.DOTALL,
)
HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")
EXCESSIVE_NEWLINES = regex.compile(r"\n{3,}")
# Control characters (CR, LF, tab, ...) and line separators in a header value
HEADER_BREAKS = regex.compile(r"\s*[\p{Cc}\p{Zl}\p{Zp}]+\s*")


@dataclass
class InboundMessage:
    """One unseen message, as needed by the reply workflow.

    Attributes:
        message_id: Message-ID header, or a synthesized identifier
        has_header_id: False when message_id was synthesized
        uid: IMAP UID within ``folder``
        folder: Folder the message was fetched from
        sender: Sender address (may be empty if the From header is unusable)
        sender_name: Display name, defaulting to the address
        subject: Original subject
        date: Original Date header (timezone-aware)
        body: Plain-text body, or raw HTML when only HTML was present
        body_is_html: True when ``body`` is HTML
    """

    message_id: str
    has_header_id: bool
    uid: int
    folder: str
    sender: str
    sender_name: str
    subject: str
    date: datetime
    body: str
    body_is_html: bool = False


def synthesize_message_id(folder: str, uid: int, now_ms: int | None = None) -> str:
    """Identifier for a message that has no Message-ID header."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{folder}-{now_ms}-{uid}"


def parse_message(raw: bytes | None, folder: str, uid: int) -> InboundMessage:
    """Parse raw bytes into an InboundMessage.

    Args:
        raw: Full message as returned by the IMAP fetch (None if missing)
        folder: Folder the message came from
        uid: IMAP UID of the message

    Raises:
        MessageParseError: If the message is empty or cannot be decoded
    """
    if not raw:
        raise MessageParseError(f"Message {uid} in {folder} has no content", uid=uid)

    try:
        msg = BytesParser(policy=policy.default).parsebytes(raw)
        return _extract(msg, folder, uid)
    except MessageParseError:
        raise
    except (LookupError, ValueError, TypeError, AttributeError, IndexError) as e:
        # email.policy.default raises these lazily on malformed headers/charsets
        raise MessageParseError(f"Message {uid} in {folder} could not be parsed: {e}", uid=uid) from e


def _extract(msg: EmailMessage, folder: str, uid: int) -> InboundMessage:
    header_id = _header_text(msg, "Message-ID").strip()
    message_id = header_id or synthesize_message_id(folder, uid)

    sender, sender_name = _parse_from(_header_text(msg, "From"))
    sender_name = _single_line(sender_name)
    subject = _single_line(_header_text(msg, "Subject")) or NO_SUBJECT
    date = _parse_date(_header_text(msg, "Date"))
    body, body_is_html = _extract_body(msg)

    return InboundMessage(
        message_id=message_id,
        has_header_id=bool(header_id),
        uid=uid,
        folder=folder,
        sender=sender,
        sender_name=sender_name or sender,
        subject=subject,
        date=date,
        body=body,
        body_is_html=body_is_html,
    )


def _header_text(msg: EmailMessage, name: str) -> str:
    value = msg.get(name)
    return str(value) if value is not None else ""


def _single_line(value: str) -> str:
    """Collapse encoded line breaks and other control characters to single spaces."""
    return HEADER_BREAKS.sub(" ", value).strip()


def _parse_from(value: str) -> tuple[str, str]:
    """Return (address, display name) of the first From mailbox."""
    if not value:
        return "", ""
    for name, address in getaddresses([value]):
        if address:
            return address, name.strip()
    return "", ""


def _parse_date(value: str) -> datetime:
    if value:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            logger.debug("invalid_date_header", value=value[:80])
        else:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed
    return datetime.now(UTC)


def _extract_body(msg: EmailMessage) -> tuple[str, bool]:
    """Return (body, is_html), preferring text/plain."""
    part = msg.get_body(preferencelist=("plain",))
    if part is not None:
        return _decode_part(part), False

    part = msg.get_body(preferencelist=("html",))
    if part is not None:
        return _decode_part(part), True

    return "", False


def _decode_part(part: EmailMessage) -> str:
    content = part.get_content()
    if isinstance(content, bytes):
        charset = part.get_content_charset() or "utf-8"
        content = content.decode(charset, errors="replace")
    return content.replace("\r\n", "\n")


def _safe_sub(pattern: regex.Pattern, repl: str, text: str) -> str:
    try:
        return pattern.sub(repl, text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("Regex timeout during substitution", pattern=pattern.pattern[:50])
        return text


def html_to_text(markup: str) -> str:
    """Reduce an HTML body to readable plain text.

    Line-ending tags become newlines, script/style blocks are dropped, other
    tags are removed and entities decoded.
    """
    text = _safe_sub(HTML_DROP_PATTERN, "", markup)
    text = _safe_sub(HTML_BREAK_PATTERN, "\n", text)
    text = _safe_sub(HTML_TAG_PATTERN, "", text)
    text = html.unescape(text)
    text = "\n".join(line.rstrip() for line in text.replace("\r\n", "\n").split("\n"))
    text = _safe_sub(EXCESSIVE_NEWLINES, "\n\n", text)
    return text.strip()
