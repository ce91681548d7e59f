"""
Tests for mailboxes.py
"""

import pytest

from conftest import FakeSession, make_message
from errors import EnumerationError, MailboxError
from mailboxes import empty_mailbox, empty_mailboxes, list_mailboxes, select_mailboxes
from models import MailboxDescriptor


def descriptors(*paths):
    return [MailboxDescriptor(path=path, name=path) for path in paths]


def test_list_mailboxes_keeps_server_order():
    session = FakeSession("source", {"INBOX": [], "Drafts": [], "Archive": []})

    assert [mailbox.path for mailbox in list_mailboxes(session)] == ["INBOX", "Drafts", "Archive"]


def test_list_mailboxes_wraps_unexpected_errors():
    session = FakeSession("source")
    session.list_error = RuntimeError("socket closed")

    with pytest.raises(EnumerationError, match="socket closed"):
        list_mailboxes(session)


def test_select_mailboxes_caps_in_order():
    mailboxes = descriptors("A", "B", "C", "D")

    assert select_mailboxes(mailboxes, 2) == mailboxes[:2]
    assert select_mailboxes(mailboxes, 10) == mailboxes


def test_empty_mailbox_deletes_messages():
    session = FakeSession("destination", {"Sent": [make_message(1), make_message(2)]})

    empty_mailbox(session, "Sent")

    assert session.mailboxes["Sent"] == []
    assert session.calls_named("mailbox_delete") == []


class UndeletableSession(FakeSession):
    def delete_all(self, path):
        raise MailboxError("EXPUNGE not permitted")


def test_empty_mailbox_recreates_when_delete_fails():
    session = UndeletableSession("destination", {"Sent": [make_message(1)]})

    empty_mailbox(session, "Sent")

    assert session.calls_named("mailbox_delete") == [("mailbox_delete", "Sent")]
    assert session.created == ["Sent"]
    assert session.mailboxes["Sent"] == []


def test_inbox_is_never_deleted():
    session = UndeletableSession("destination", {"INBOX": [make_message(1)]})

    empty_mailbox(session, "INBOX")

    assert session.calls_named("mailbox_delete") == []


def test_empty_mailboxes_reports_failures():
    session = UndeletableSession("destination", {"INBOX": [make_message(1)], "Sent": []})
    session.create_errors["Sent"] = MailboxError("NO permission denied")

    result = empty_mailboxes(session)

    assert result == {"emptied": ["INBOX"], "failed": ["Sent"]}
