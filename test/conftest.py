"""
Shared pytest fixtures and fakes for the IMAP sync tests.
"""

import os
import sys

import pytest

# Ensure the project modules are importable without installation
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from errors import MailboxError, MessageError
from models import ConnectionConfig, MailboxDescriptor, SyncOptions
from progress_manager import ProgressStore


def make_message(uid, body=None, size=None, message_id=None):
    """A message held by FakeSession."""
    if body is None:
        body = f"Subject: message {uid}\r\n\r\nbody {uid}\r\n".encode()
    return {
        "uid": uid,
        "body": body,
        "size": len(body) if size is None else size,
        "message_id": message_id or f"<{uid}@example.com>",
        "flags": (b"\\Seen", b"\\Recent"),
    }


class FakeSession:
    """In-memory stand-in for ImapSession.

    ``mailboxes`` maps a path to a list of messages from make_message.
    Failure hooks are plain attributes tests can set.
    """

    def __init__(self, label, mailboxes=None, delimiter="/"):
        self.label = label
        self.delimiter = delimiter
        self.mailboxes = {path: list(messages) for path, messages in (mailboxes or {}).items()}
        self.appended = {}
        self.calls = []
        self.opened = []
        self.created = []
        self.logout_calls = 0
        self.close_calls = 0

        self.list_error = None
        self.search_error = None
        self.search_results = None
        self.open_errors = {}
        self.create_errors = {}
        self.append_error = None
        self.logout_error = None

    # Listing and mailbox commands

    def list(self):
        self.calls.append(("list",))
        if self.list_error:
            raise self.list_error
        return [
            MailboxDescriptor(path=path, name=path.rsplit(self.delimiter, 1)[-1], delimiter=self.delimiter)
            for path in self.mailboxes
        ]

    def mailbox_open(self, path, readonly=False):
        self.calls.append(("mailbox_open", path))
        if path in self.open_errors:
            raise self.open_errors[path]
        if path not in self.mailboxes:
            raise MailboxError(f"Mailbox {path} does not exist")
        self.opened.append(path)
        return {}

    def mailbox_create(self, path):
        self.calls.append(("mailbox_create", path))
        if path in self.create_errors:
            raise self.create_errors[path]
        if path in self.mailboxes:
            return False
        self.mailboxes[path] = []
        self.created.append(path)
        return True

    def mailbox_delete(self, path):
        self.calls.append(("mailbox_delete", path))
        self.mailboxes.pop(path, None)

    def status(self, path):
        self.calls.append(("status", path))
        return len(self.mailboxes[path])

    def search(self, limit, criteria="ALL"):
        self.calls.append(("search", limit))
        if self.search_error:
            raise self.search_error
        if self.search_results is not None:
            return self.search_results
        current = self.opened[-1]
        return [message["uid"] for message in self.mailboxes[current]][:limit]

    # Message commands

    def _find(self, ref):
        messages = self.mailboxes[self.opened[-1]]
        if ref.is_uid:
            for message in messages:
                if message["uid"] == ref.number:
                    return message
        elif 1 <= ref.number <= len(messages):
            return messages[ref.number - 1]
        raise MessageError(f"Message {ref} not found")

    def fetch_one(self, ref, items):
        items = list(items)
        self.calls.append(("fetch_one", ref, tuple(items)))
        message = self._find(ref)
        data = {
            "size": message["size"],
            "message_id": message["message_id"],
            "source": None,
            "flags": (),
            "internal_date": None,
            "body_structure": None,
        }
        if "BODY.PEEK[]" in items:
            data.update(source=message["body"], flags=message["flags"])
        return data

    def append(self, path, content, flags=(), msg_time=None):
        self.calls.append(("append", path))
        if self.append_error:
            self.append_error(path, content)
        self.appended.setdefault(path, []).append({"content": content, "flags": list(flags)})
        self.mailboxes.setdefault(path, []).append(make_message(len(self.mailboxes[path]) + 1, body=content))
        return b"APPEND completed"

    def message_exists(self, path, message_id):
        self.calls.append(("message_exists", path, message_id))
        return any(message["message_id"] == message_id for message in self.mailboxes.get(path, []))

    def delete_all(self, path):
        self.calls.append(("delete_all", path))
        count = len(self.mailboxes[path])
        self.mailboxes[path] = []
        return count

    # Connection

    def logout(self):
        self.logout_calls += 1
        if self.logout_error:
            raise self.logout_error

    def close(self):
        self.close_calls += 1

    def calls_named(self, name):
        return [call for call in self.calls if call[0] == name]


class RecordingStore(ProgressStore):
    """ProgressStore that keeps every record it produced."""

    def __init__(self):
        super().__init__()
        self.history = []

    def update(self, session_id, data):
        record = super().update(session_id, data)
        self.history.append(record)
        return record


def make_connector(source, destination, source_error=None, destination_error=None):
    """Connector returning the given fakes, optionally failing to connect."""
    def connector(config, label):
        if label == "source":
            if source_error:
                raise source_error
            return source
        if destination_error:
            raise destination_error
        return destination
    return connector


@pytest.fixture
def source_config():
    return ConnectionConfig(host="imap.source.example", port=993, username="alice", password="secret")


@pytest.fixture
def destination_config():
    return ConnectionConfig(host="imap.destination.example", port=993, username="alice", password="secret")


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def options():
    return SyncOptions(batch_size=10, max_retries=0, retry_delay_ms=0)

