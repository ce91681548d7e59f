#!/usr/bin/env python3
"""
Exceptions raised by the IMAP sync engine.
"""


class SyncError(Exception):
    """Base exception for all sync engine errors."""


class ImapConnectionError(SyncError):
    """Could not connect or authenticate to an IMAP server."""


class EnumerationError(SyncError):
    """The source server rejected the mailbox listing."""


class MailboxError(SyncError):
    """A mailbox could not be opened, created or queried."""


class MessageError(SyncError):
    """A single message could not be copied."""


class SizeLimitError(MessageError):
    """A message is larger than the configured size limit."""


class StoreError(SyncError):
    """Reading or writing the progress store failed."""
