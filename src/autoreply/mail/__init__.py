"""Mail protocol layer.

Provides the pieces the traversal engine drives:
- IMAP session wrapper (connect, select, search, fetch, flag, close)
- Message parsing into InboundMessage records
- Reply composition (subject, quoted text/HTML body, threading headers)
- SMTP dispatch

Usage:
    from autoreply.mail import MailboxClient, ReplyComposer, ReplyDispatcher, parse_message

    client = MailboxClient(account, password)
    composer = ReplyComposer(account.email, template, timezone="UTC")
    dispatcher = ReplyDispatcher(account, password)
"""

from autoreply.mail.imap import MailboxClient
from autoreply.mail.parsing import InboundMessage, html_to_text, parse_message
from autoreply.mail.reply import ReplyComposer, is_reply_subject, reply_subject
from autoreply.mail.smtp import ReplyDispatcher

__all__ = [
    # IMAP
    "MailboxClient",
    # Parsing
    "InboundMessage",
    "html_to_text",
    "parse_message",
    # Replies
    "ReplyComposer",
    "ReplyDispatcher",
    "is_reply_subject",
    "reply_subject",
]
