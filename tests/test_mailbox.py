"""Tests for the mailbox traversal engine.

Covers the per-account state machine against an in-memory mailbox:
- Happy path (2 unseen in INBOX, empty Junk)
- Idempotence across repeated runs
- At-least-once on send failure
- Folder isolation (open/search/fetch failures)
- Per-message failures (parse, missing sender, duplicates in a batch)
- Best-effort steps (flag, close, logout)
"""

from unittest.mock import AsyncMock

import pytest
from conftest import (
    ACCOUNT_EMAIL,
    FakeDispatcher,
    FakeMailbox,
    make_raw_headers_message,
    make_raw_message,
)

from autoreply.core.errors import DatabaseError, MailboxConnectionError
from autoreply.engine.mailbox import AccountResult, MailboxTraversal


def _traversal(account, template, store, ledger, mailbox, dispatcher, **kwargs):
    return MailboxTraversal(
        account=account,
        template=template,
        store=store,
        ledger=ledger,
        timezone="Asia/Shanghai",
        client_factory=mailbox.client,
        dispatcher_factory=dispatcher,
        **kwargs,
    )


def _messages(ledger, level=None):
    entries = ledger.by_level(level) if level else ledger.all()
    return [entry.message for entry in reversed(entries)]


@pytest.fixture
def two_message_mailbox() -> FakeMailbox:
    return FakeMailbox(
        {
            "INBOX": [
                make_raw_message(message_id="<a@example.com>", sender="Alice <alice@example.com>"),
                make_raw_message(message_id="<b@example.com>", sender="Bob <bob@example.com>"),
            ],
            "Junk": [],
        }
    )


class TestHappyPath:
    """Tests for a clean traversal."""

    async def test_two_unseen_messages_get_two_replies(
        self, account, template, store, ledger, two_message_mailbox, dispatcher
    ) -> None:
        traversal = _traversal(account, template, store, ledger, two_message_mailbox, dispatcher)

        result = await traversal.run()

        assert isinstance(result, AccountResult)
        assert result.replies_sent == 2
        assert result.messages_found == 2
        assert result.folders_opened == 2
        assert result.failures == 0
        assert sorted(str(m["To"]) for m in dispatcher.sent) == [
            "alice@example.com",
            "bob@example.com",
        ]
        assert await store.count_processed(ACCOUNT_EMAIL) == 2
        assert two_message_mailbox.seen["INBOX"] == {1, 2}

    async def test_ledger_records_each_step(
        self, account, template, store, ledger, two_message_mailbox, dispatcher
    ) -> None:
        await _traversal(account, template, store, ledger, two_message_mailbox, dispatcher).run()

        messages = _messages(ledger)
        assert len(messages) >= 5
        assert messages[0] == "Connected to IMAP server imap.example.com"
        assert "Opened folder INBOX" in messages
        assert "Opened folder Junk" in messages
        assert "Found 2 unseen messages in INBOX" in messages
        assert "No unseen messages in Junk" in messages
        assert "Reply sent to alice@example.com" in messages
        assert "Reply sent to bob@example.com" in messages
        assert "Folder INBOX done, 2 replies sent" in messages
        assert "Account done, 2 replies sent in total" in messages
        assert messages[-1] == "Disconnected from IMAP server"
        assert all(entry.email_account == ACCOUNT_EMAIL for entry in ledger.all())
        assert ledger.by_level("ERROR") == []
        assert ledger.by_level("WARNING") == []

    async def test_folders_visited_in_order_and_closed(
        self, account, template, store, ledger, two_message_mailbox, dispatcher
    ) -> None:
        await _traversal(account, template, store, ledger, two_message_mailbox, dispatcher).run()

        names = [call[0] for call in two_message_mailbox.calls]
        assert names[0] == "connect"
        assert names[-1] == "disconnect"
        assert [c for c in two_message_mailbox.calls if c[0] == "open_folder"] == [
            ("open_folder", "INBOX"),
            ("open_folder", "Junk"),
        ]
        assert two_message_mailbox.count("close_folder") == 2
        assert two_message_mailbox.count("disconnect") == 1

    async def test_close_happens_after_all_messages(
        self, account, template, store, ledger, two_message_mailbox, dispatcher
    ) -> None:
        await _traversal(account, template, store, ledger, two_message_mailbox, dispatcher).run()

        calls = two_message_mailbox.calls
        first_close = calls.index(("close_folder", "INBOX"))
        marks = [i for i, call in enumerate(calls) if call[0] == "mark_seen"]
        assert len(marks) == 2
        assert max(marks) < first_close

    async def test_custom_folder_list(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        mailbox = FakeMailbox({"INBOX": [], "Spam": [make_raw_message()]})
        traversal = _traversal(
            account, template, store, ledger, mailbox, dispatcher, folders=["Spam"]
        )

        result = await traversal.run()

        assert result.replies_sent == 1
        assert ("open_folder", "INBOX") not in mailbox.calls


class TestIdempotence:
    """A message is replied to at most once."""

    async def test_second_run_skips_processed_messages(
        self, account, template, store, ledger, two_message_mailbox, dispatcher
    ) -> None:
        await _traversal(account, template, store, ledger, two_message_mailbox, dispatcher).run()
        # Another client marked them unread again
        two_message_mailbox.mark_all_unseen()
        marks_before = two_message_mailbox.count("mark_seen")

        result = await _traversal(
            account, template, store, ledger, two_message_mailbox, dispatcher
        ).run()

        assert result.replies_sent == 0
        assert result.skipped_duplicates == 2
        assert len(dispatcher.sent) == 2
        assert await store.count_processed() == 2
        assert two_message_mailbox.count("mark_seen") == marks_before
        assert "Message <a@example.com> already processed, skipped" in _messages(ledger)

    async def test_duplicate_message_id_in_one_batch_replied_once(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        raw = make_raw_message(message_id="<same@example.com>")
        mailbox = FakeMailbox({"INBOX": [raw, raw], "Junk": []})

        result = await _traversal(account, template, store, ledger, mailbox, dispatcher).run()

        assert result.replies_sent == 1
        assert result.skipped_duplicates == 1
        assert len(dispatcher.sent) == 1
        assert await store.count_processed() == 1


class TestSendFailure:
    """Send failures leave the message eligible for the next run."""

    async def test_failed_send_is_not_recorded_or_marked_read(
        self, account, template, store, ledger, two_message_mailbox
    ) -> None:
        dispatcher = FakeDispatcher(fail_for={"alice@example.com"})

        result = await _traversal(
            account, template, store, ledger, two_message_mailbox, dispatcher
        ).run()

        assert result.replies_sent == 1
        assert result.failures == 1
        assert not await store.has(ACCOUNT_EMAIL, "<a@example.com>")
        assert await store.has(ACCOUNT_EMAIL, "<b@example.com>")
        assert two_message_mailbox.seen["INBOX"] == {2}

        errors = ledger.by_level("ERROR")
        assert len(errors) == 1
        assert "alice@example.com" in errors[0].message
        assert "Question about my order" in errors[0].message
        assert errors[0].email_account == ACCOUNT_EMAIL

    async def test_next_run_retries_failed_send(
        self, account, template, store, ledger, two_message_mailbox
    ) -> None:
        await _traversal(
            account,
            template,
            store,
            ledger,
            two_message_mailbox,
            FakeDispatcher(fail_for={"alice@example.com"}),
        ).run()

        retry = FakeDispatcher()
        result = await _traversal(
            account, template, store, ledger, two_message_mailbox, retry
        ).run()

        assert result.replies_sent == 1
        assert [str(m["To"]) for m in retry.sent] == ["alice@example.com"]
        assert await store.has(ACCOUNT_EMAIL, "<a@example.com>")


class TestFolderIsolation:
    """A failing folder never stops the next one."""

    async def test_folder_open_failure_is_warning_and_next_folder_runs(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        mailbox = FakeMailbox({"INBOX": [], "Junk": [make_raw_message()]})
        mailbox.fail_open = {"INBOX"}

        result = await _traversal(account, template, store, ledger, mailbox, dispatcher).run()

        assert result.replies_sent == 1
        assert result.folders_opened == 1
        warnings = ledger.by_level("WARNING")
        assert len(warnings) == 1
        assert "INBOX" in warnings[0].message
        # Not opened, so not closed
        assert ("close_folder", "INBOX") not in mailbox.calls

    async def test_missing_junk_folder_still_completes(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        mailbox = FakeMailbox({"INBOX": [make_raw_message()]})

        result = await _traversal(account, template, store, ledger, mailbox, dispatcher).run()

        assert result.replies_sent == 1
        assert len(ledger.by_level("WARNING")) == 1

    async def test_search_failure_is_error_and_folder_closed(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        mailbox = FakeMailbox({"INBOX": [make_raw_message()], "Junk": [make_raw_message()]})
        mailbox.fail_search = {"INBOX"}

        result = await _traversal(account, template, store, ledger, mailbox, dispatcher).run()

        assert result.replies_sent == 1
        assert ("close_folder", "INBOX") in mailbox.calls
        errors = ledger.by_level("ERROR")
        assert len(errors) == 1
        assert "INBOX" in errors[0].message

    async def test_fetch_failure_is_error_and_folder_closed(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        mailbox = FakeMailbox({"INBOX": [make_raw_message()], "Junk": []})
        mailbox.fail_fetch = {"INBOX"}

        result = await _traversal(account, template, store, ledger, mailbox, dispatcher).run()

        assert result.replies_sent == 0
        assert result.failures == 1
        assert ("close_folder", "INBOX") in mailbox.calls
        assert len(ledger.by_level("ERROR")) == 1
        assert mailbox.seen["INBOX"] == set()


class TestMessageFailures:
    """Failures scoped to one message."""

    async def test_unparseable_message_is_skipped(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        mailbox = FakeMailbox({"INBOX": [None, make_raw_message()], "Junk": []})

        result = await _traversal(account, template, store, ledger, mailbox, dispatcher).run()

        assert result.replies_sent == 1
        assert result.failures == 1
        assert mailbox.seen["INBOX"] == {2}
        errors = ledger.by_level("ERROR")
        assert len(errors) == 1
        assert "parse" in errors[0].message

    async def test_message_without_sender_is_skipped(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        mailbox = FakeMailbox({"INBOX": [make_raw_message(sender=None)], "Junk": []})

        result = await _traversal(account, template, store, ledger, mailbox, dispatcher).run()

        assert result.replies_sent == 0
        assert dispatcher.sent == []
        assert len(ledger.by_level("ERROR")) == 1
        assert mailbox.seen["INBOX"] == set()

    async def test_missing_message_id_is_synthesized_consistently(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        mailbox = FakeMailbox({"INBOX": [make_raw_message(message_id=None)], "Junk": []})

        result = await _traversal(account, template, store, ledger, mailbox, dispatcher).run()

        assert result.replies_sent == 1
        records = await store.list_processed(ACCOUNT_EMAIL)
        assert len(records) == 1
        synthesized = records[0].message_id
        assert synthesized.startswith("INBOX-")
        assert synthesized.endswith("-1")
        assert await store.has(ACCOUNT_EMAIL, synthesized)
        # No threading headers for an id the sender never saw
        assert dispatcher.sent[0]["In-Reply-To"] is None
        assert dispatcher.sent[0]["References"] is None

    async def test_encoded_line_break_in_subject_still_answered(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        raw = make_raw_headers_message(
            [
                ("From", "Alice <alice@example.com>"),
                ("To", ACCOUNT_EMAIL),
                ("Subject", "=?utf-8?q?Order_123=0D=0ABcc=3A_x?="),
                ("Message-ID", "<nl@example.com>"),
            ]
        )
        mailbox = FakeMailbox({"INBOX": [raw], "Junk": []})

        result = await _traversal(account, template, store, ledger, mailbox, dispatcher).run()

        assert result.replies_sent == 1
        assert result.failures == 0
        assert dispatcher.sent[0]["Subject"] == "Re: Order 123 Bcc: x"
        assert dispatcher.sent[0]["Bcc"] is None
        assert mailbox.seen["INBOX"] == {1}
        assert all("\n" not in m and "\r" not in m for m in _messages(ledger))

    async def test_store_lookup_failure_skips_message(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        mailbox = FakeMailbox({"INBOX": [make_raw_message()], "Junk": []})
        store.has = AsyncMock(side_effect=DatabaseError("database is locked"))

        result = await _traversal(account, template, store, ledger, mailbox, dispatcher).run()

        assert result.replies_sent == 0
        assert dispatcher.sent == []
        assert len(ledger.by_level("ERROR")) == 1
        assert mailbox.seen["INBOX"] == set()


class TestBestEffortSteps:
    """Flag, close and logout failures are warnings only."""

    async def test_flag_failure_is_warning_and_reply_recorded(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        mailbox = FakeMailbox({"INBOX": [make_raw_message()], "Junk": []})
        mailbox.fail_flag = True

        result = await _traversal(account, template, store, ledger, mailbox, dispatcher).run()

        assert result.replies_sent == 1
        assert await store.has(ACCOUNT_EMAIL, "<msg-1@mail.example.com>")
        warnings = ledger.by_level("WARNING")
        assert len(warnings) == 1
        assert "alice@example.com" in warnings[0].message
        assert ledger.by_level("ERROR") == []

    async def test_close_failure_is_warning(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        mailbox = FakeMailbox({"INBOX": [make_raw_message()], "Junk": []})
        mailbox.fail_close = True

        result = await _traversal(account, template, store, ledger, mailbox, dispatcher).run()

        assert result.replies_sent == 1
        assert result.folders_opened == 2
        assert len(ledger.by_level("WARNING")) == 2

    async def test_logout_failure_is_warning(
        self, account, template, store, ledger, two_message_mailbox, dispatcher
    ) -> None:
        two_message_mailbox.fail_logout = True

        result = await _traversal(
            account, template, store, ledger, two_message_mailbox, dispatcher
        ).run()

        assert result.replies_sent == 2
        warnings = ledger.by_level("WARNING")
        assert len(warnings) == 1
        assert "disconnect" in warnings[0].message


class TestConnectFailure:
    """Connection failures are fatal for the account."""

    async def test_connect_failure_raises_and_disconnects_once(
        self, account, template, store, ledger, dispatcher
    ) -> None:
        mailbox = FakeMailbox({"INBOX": [make_raw_message()]})
        mailbox.fail_connect = True

        with pytest.raises(MailboxConnectionError):
            await _traversal(account, template, store, ledger, mailbox, dispatcher).run()

        assert mailbox.count("disconnect") == 1
        assert mailbox.count("open_folder") == 0
        # The coordinator owns the single ERROR entry for this failure
        assert len(ledger) == 0
