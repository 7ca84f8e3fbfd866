"""Reply composition: subject, quoted body and threading headers.

Every reply carries the configured template text followed by a quotation of
the original message. The quotation is rendered twice, as plain text with
"> " prefixed lines and as an HTML block with labeled header fields; both
renditions carry the same information.

Usage:
    from autoreply.mail.reply import ReplyComposer

    composer = ReplyComposer("me@example.com", template, timezone="Asia/Shanghai")
    reply = composer.compose(inbound_message)
    # reply is an email.message.EmailMessage ready for SMTP
"""

from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from email.utils import format_datetime, formataddr, make_msgid
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from autoreply.mail.parsing import html_to_text

if TYPE_CHECKING:
    from autoreply.config_schema import ReplyTemplate
    from autoreply.mail.parsing import InboundMessage

REPLY_PREFIX = "Re: "

# Case-insensitive prefixes that already mark a subject as a reply
REPLY_MARKERS = ("re:", "re：", "回复:", "回复：", "答复:", "答复：")

QUOTE_TITLE = "Original Message"
LABEL_FROM = "From"
LABEL_SENT = "Sent"
LABEL_TO = "To"
LABEL_SUBJECT = "Subject"


def is_reply_subject(subject: str) -> bool:
    """True if the subject already starts with a reply marker."""
    lowered = subject.lstrip().lower()
    return any(lowered.startswith(marker) for marker in REPLY_MARKERS)


def reply_subject(original: str, fixed: str | None = None) -> str:
    """Derive the reply subject.

    A fixed subject wins outright. Otherwise an already-marked subject is kept
    as is and anything else gets "Re: " prepended, so applying the rule twice
    never produces "Re: Re:".
    """
    if fixed:
        return fixed
    if is_reply_subject(original):
        return original
    return f"{REPLY_PREFIX}{original}"


def format_original_date(date: datetime, timezone: str = "UTC") -> str:
    """RFC 2822 date of the original message in the configured timezone."""
    return format_datetime(date.astimezone(ZoneInfo(timezone)))


@dataclass(frozen=True)
class QuotedOriginal:
    """Header fields and body shown in the quotation block."""

    sender_name: str
    sender: str
    sent: str
    recipient: str
    subject: str
    body: str

    @property
    def from_display(self) -> str:
        return f'"{self.sender_name}" <{self.sender}>'


def render_text_body(content: str, quoted: QuotedOriginal) -> str:
    """Plain-text rendition: template, separator, headers, "> " quoted body."""
    quoted_lines = "\n".join(f"> {line}" for line in quoted.body.split("\n"))
    return (
        f"{content}\n"
        "\n"
        "---\n"
        f"{QUOTE_TITLE}\n"
        f"{LABEL_FROM}: {quoted.from_display}\n"
        f"{LABEL_SENT}: {quoted.sent}\n"
        f"{LABEL_TO}: {quoted.recipient}\n"
        f"{LABEL_SUBJECT}: {quoted.subject}\n"
        "\n"
        f"{quoted_lines}\n"
    )


def _html_lines(text: str, wrap: bool) -> str:
    rendered = []
    for line in text.split("\n"):
        if not line.strip():
            rendered.append("<br />")
        elif wrap:
            rendered.append(f"<div>{html.escape(line)}</div>")
        else:
            rendered.append(f"{html.escape(line)}<br />")
    return "\n".join(rendered)


def _html_header_row(label: str, value: str) -> str:
    return (
        '<div style="line-height:20px;font-size:12px;">'
        f'<span style="color:rgb(92,97,102);">{label}: </span>'
        f'<span style="color:rgb(0,0,0);">{html.escape(value)}</span></div>'
    )


def render_html_body(content: str, quoted: QuotedOriginal) -> str:
    """HTML rendition: template, titled rule, header table, quoted body.

    All template and message text is escaped.
    """
    header_rows = "\n".join(
        [
            _html_header_row(LABEL_FROM, quoted.from_display),
            _html_header_row(LABEL_SENT, quoted.sent),
            _html_header_row(LABEL_TO, quoted.recipient),
            _html_header_row(LABEL_SUBJECT, quoted.subject),
        ]
    )
    return f"""<div style="line-height:1.43;"><br /></div>
<div style="font-family:-apple-system,system-ui;font-size:14px;color:rgb(0,0,0);line-height:1.43;">
{_html_lines(content, wrap=True)}
</div>
<article style="line-height:1.43;">
<div style="display:flex;align-items:center;padding-top:8px">
<div style="color:#959DA6;font-size:12px;line-height:30px">{QUOTE_TITLE}</div>
<hr style="border:none;flex-grow:1;border-top:1px solid rgba(21,46,74,0.07);margin-left:8px" />
</div>
<table style="line-height:20px;border-radius:6px;background-color:rgba(20,46,77,0.05);margin:0px;width:100%;">
<tbody><tr><td style="line-height:20px;padding:8px;">
{header_rows}
</td></tr></tbody></table>
<div><br /></div>
<div style="line-height:1.5;font-size:14px;color:rgb(0,0,0);">
{_html_lines(quoted.body, wrap=False)}
</div>
</article>
"""


class ReplyComposer:
    """Builds the outgoing reply for one account and template.

    Attributes:
        account_email: Address the reply is sent from (and the original recipient)
        template: Reply template snapshot for the current run
        timezone: IANA timezone used to render the original date
    """

    def __init__(self, account_email: str, template: ReplyTemplate, timezone: str = "UTC"):
        self.account_email = account_email
        self.template = template
        self.timezone = timezone

    def quote(self, message: InboundMessage) -> QuotedOriginal:
        body = html_to_text(message.body) if message.body_is_html else message.body
        return QuotedOriginal(
            sender_name=message.sender_name or message.sender,
            sender=message.sender,
            sent=format_original_date(message.date, self.timezone),
            recipient=self.account_email,
            subject=message.subject,
            body=body,
        )

    def compose(self, message: InboundMessage) -> EmailMessage:
        """Build a multipart/alternative reply to ``message``."""
        quoted = self.quote(message)

        reply = EmailMessage()
        reply["From"] = (
            formataddr((self.template.sender_name, self.account_email))
            if self.template.sender_name
            else self.account_email
        )
        reply["To"] = message.sender
        reply["Subject"] = reply_subject(message.subject, self.template.subject)
        reply["Date"] = format_datetime(datetime.now(ZoneInfo(self.timezone)))
        domain = self.account_email.rsplit("@", 1)[-1]
        reply["Message-ID"] = make_msgid(domain=domain)
        # RFC 3834: keep other responders from answering this reply
        reply["Auto-Submitted"] = "auto-replied"
        reply["X-Auto-Response-Suppress"] = "All"
        if message.has_header_id:
            reply["In-Reply-To"] = message.message_id
            reply["References"] = message.message_id

        reply.set_content(render_text_body(self.template.content, quoted))
        reply.add_alternative(render_html_body(self.template.content, quoted), subtype="html")
        return reply
