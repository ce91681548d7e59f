#!/usr/bin/env python3
"""
IMAP session wrapper used by the sync engine.
"""

import ssl
import time
import socket
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Any, Optional, Iterable

# IMAP imports
import imapclient
from imapclient.exceptions import IMAPClientError

from errors import ImapConnectionError, EnumerationError, MailboxError, MessageError
from models import ConnectionConfig, MailboxDescriptor, MessageRef


IMAP_ERRORS = (IMAPClientError, socket.error, ssl.SSLError)

SIZE_ITEMS = ['RFC822.SIZE', 'ENVELOPE']
SOURCE_ITEMS = ['BODY.PEEK[]', 'BODYSTRUCTURE', 'FLAGS', 'INTERNALDATE']


@contextmanager
def imap_errors(error_class, description: str):
    """Translate library and socket errors into sync engine errors."""
    try:
        yield
    except IMAP_ERRORS as e:
        raise error_class(f"{description}: {_error_text(e)}") from e


def _error_text(error: Exception) -> str:
    text = str(error)
    return text or type(error).__name__


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)


def build_ssl_context(config: ConnectionConfig) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not config.tls_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class ImapSession:
    """One authenticated IMAP connection."""

    def __init__(self, config: ConnectionConfig, label: str = "imap"):
        self.config = config
        self.label = label
        self.client = None
        self.connection_start_time = None
        self.last_activity = None
        self.connection_errors = 0

    def connect(self) -> None:
        """Open the socket and log in."""
        config = self.config
        self.connection_start_time = time.time()
        logging.info(f"🔌 Connecting to {self.label} server {config.host}:{config.port} (TLS: {config.secure})")

        timeout = imapclient.SocketTimeout(connect=config.connect_timeout, read=config.socket_timeout)
        try:
            self.client = imapclient.IMAPClient(
                config.host,
                port=config.port,
                ssl=config.secure,
                ssl_context=build_ssl_context(config) if config.secure else None,
                timeout=timeout,
            )
            self.client.login(config.username, config.password)
        except IMAP_ERRORS as e:
            self.connection_errors += 1
            logging.error(f"Failed to connect to {self.label} server {config.describe()}: {e}")
            self._drop_socket()
            raise ImapConnectionError(
                f"Could not connect to {self.label} server {config.host}:{config.port}: {_error_text(e)}"
            ) from e

        self.last_activity = time.time()
        logging.info(f"✅ Connected to {self.label} server {config.host}")
        logging.debug(f"🔗 Connection established in {self.last_activity - self.connection_start_time:.2f}s")

    def _drop_socket(self) -> None:
        if self.client is None:
            return
        try:
            self.client.shutdown()
        except IMAP_ERRORS as e:
            logging.debug(f"Ignoring error while dropping {self.label} socket: {e}")
        self.client = None

    def _touch(self) -> None:
        self.last_activity = time.time()

    def list(self) -> List[MailboxDescriptor]:
        """List every mailbox in server order."""
        with imap_errors(EnumerationError, f"Listing mailboxes on {self.label} failed"):
            folders = self.client.list_folders()
        self._touch()

        mailboxes = []
        for _flags, delimiter, path in folders:
            delimiter = _decode(delimiter)
            path = _decode(path)
            name = path.rsplit(delimiter, 1)[-1] if delimiter else path
            mailboxes.append(MailboxDescriptor(path=path, name=name, delimiter=delimiter))
        return mailboxes

    def mailbox_open(self, path: str, readonly: bool = False) -> Dict[bytes, Any]:
        with imap_errors(MailboxError, f"Could not open mailbox {path} on {self.label}"):
            info = self.client.select_folder(path, readonly=readonly)
        self._touch()
        return info

    def mailbox_create(self, path: str) -> bool:
        """Create a mailbox. Returns False if it already existed."""
        try:
            self.client.create_folder(path)
        except IMAPClientError as e:
            if 'exist' in str(e).lower():
                return False
            with imap_errors(MailboxError, f"Could not create mailbox {path} on {self.label}"):
                if self.client.folder_exists(path):
                    return False
            raise MailboxError(f"Could not create mailbox {path} on {self.label}: {_error_text(e)}") from e
        except (socket.error, ssl.SSLError) as e:
            raise MailboxError(f"Could not create mailbox {path} on {self.label}: {_error_text(e)}") from e
        self._touch()
        return True

    def status(self, path: str) -> int:
        """Number of messages in a mailbox."""
        with imap_errors(MailboxError, f"Status of mailbox {path} on {self.label} failed"):
            status = self.client.folder_status(path, ['MESSAGES'])
        self._touch()
        try:
            return int(status.get(b'MESSAGES', 0))
        except (TypeError, ValueError) as e:
            raise MailboxError(f"Malformed status response for {path}: {status!r}") from e

    def search(self, limit: int, criteria='ALL') -> List[int]:
        """UIDs of the first ``limit`` messages matching ``criteria``."""
        with imap_errors(MessageError, f"Search on {self.label} failed"):
            uids = self.client.search(criteria)
        self._touch()
        return list(uids)[:limit]

    def fetch_one(self, ref: MessageRef, items: Iterable[str]) -> Dict[str, Any]:
        """Fetch data items for one message, addressed the way ``ref`` says."""
        use_uid = self.client.use_uid
        self.client.use_uid = ref.is_uid
        try:
            with imap_errors(MessageError, f"Fetch of {ref} on {self.label} failed"):
                response = self.client.fetch([ref.number], list(items))
        finally:
            self.client.use_uid = use_uid
        self._touch()

        data = response.get(ref.number)
        if data is None:
            raise MessageError(f"Message {ref} not found on {self.label}")

        envelope = data.get(b'ENVELOPE')
        return {
            'size': data.get(b'RFC822.SIZE'),
            'source': data.get(b'BODY[]'),
            'body_structure': data.get(b'BODYSTRUCTURE'),
            'flags': data.get(b'FLAGS', ()),
            'internal_date': data.get(b'INTERNALDATE'),
            'message_id': _decode(getattr(envelope, 'message_id', None)),
        }

    def append(self, path: str, content: bytes, flags: Iterable = (), msg_time: Optional[datetime] = None) -> bytes:
        start_time = time.time()
        with imap_errors(MessageError, f"Append to {path} on {self.label} failed"):
            response = self.client.append(path, content, flags=tuple(flags), msg_time=msg_time)
        self._touch()

        upload_time = self.last_activity - start_time
        if upload_time > 5.0:
            logging.warning(f"⚠️ Slow IMAP upload: {upload_time:.2f}s for message to {path}")
        return response

    def message_exists(self, path: str, message_id: str) -> bool:
        """True if the currently selected mailbox holds a message with this Message-ID."""
        with imap_errors(MessageError, f"Duplicate check in {path} on {self.label} failed"):
            found = self.client.search(['HEADER', 'Message-ID', message_id])
        self._touch()
        return bool(found)

    def delete_all(self, path: str) -> int:
        """Delete and expunge every message in a mailbox."""
        with imap_errors(MailboxError, f"Emptying mailbox {path} on {self.label} failed"):
            self.client.select_folder(path)
            uids = self.client.search('ALL')
            if uids:
                self.client.delete_messages(uids)
                self.client.expunge()
        self._touch()
        return len(uids)

    def mailbox_delete(self, path: str) -> None:
        with imap_errors(MailboxError, f"Deleting mailbox {path} on {self.label} failed"):
            self.client.delete_folder(path)
        self._touch()

    def logout(self) -> None:
        """Log out and close the connection."""
        if self.client is None:
            return
        try:
            self.client.logout()
        except IMAP_ERRORS as e:
            self.connection_errors += 1
            self._log_connection_diagnostics()
            raise ImapConnectionError(f"Logout from {self.label} server failed: {_error_text(e)}") from e
        self.client = None
        if self.connection_start_time:
            total_duration = time.time() - self.connection_start_time
            logging.info(f"✅ Disconnected from {self.label} server (duration: {total_duration:.1f}s, errors: {self.connection_errors})")

    def close(self) -> None:
        """Drop the socket without a LOGOUT exchange."""
        self._drop_socket()
        logging.info(f"🔌 Closed {self.label} connection")

    def _log_connection_diagnostics(self) -> None:
        if self.connection_start_time:
            connection_duration = time.time() - self.connection_start_time
            logging.info(f"🔗 {self.label} connection duration: {connection_duration:.1f}s")
            logging.info(f"❌ {self.label} connection errors: {self.connection_errors}")

            if self.last_activity:
                time_since_activity = time.time() - self.last_activity
                logging.info(f"⏱️ Time since last activity: {time_since_activity:.1f}s")
