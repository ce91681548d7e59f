#!/usr/bin/env python3
"""
Opening and closing the IMAP sessions of a sync run.
"""

import logging
from typing import Callable, Dict, List, Any

from errors import SyncError
from imap_client import ImapSession
from models import ConnectionConfig


def open_session(config: ConnectionConfig, label: str) -> ImapSession:
    """Default connector: a live, authenticated ImapSession."""
    session = ImapSession(config, label=label)
    session.connect()
    return session


class ConnectionManager:
    """Owns the sessions of one run and guarantees they get closed."""

    def __init__(self, connector: Callable[[ConnectionConfig, str], Any] = open_session):
        self.connector = connector
        self.sessions: Dict[str, Any] = {}

    def open(self, config: ConnectionConfig, label: str):
        """Open a session. Raises ImapConnectionError on failure."""
        session = self.connector(config, label)
        self.sessions[label] = session
        return session

    def close_all(self) -> List[str]:
        """Log out of every open session, falling back to close().

        Failures are logged and returned, never raised.
        """
        failures = []
        for label, session in list(self.sessions.items()):
            try:
                session.logout()
                logging.info(f"Logged out from {label} server")
            except Exception as e:
                logging.error(f"❌ Error logging out from {label} server: {e}")
                failures.append(f"Logout from {label} server failed: {e}")
                try:
                    session.close()
                except Exception as close_error:
                    logging.error(f"❌ Error closing {label} connection: {close_error}")
        self.sessions.clear()
        return failures

    def __enter__(self) -> "ConnectionManager":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close_all()


def probe(config: ConnectionConfig, connector: Callable[[ConnectionConfig, str], Any] = open_session) -> Dict[str, Any]:
    """Check that an account is reachable and list its mailboxes.

    A failing mailbox listing still counts as a successful connection.
    """
    manager = ConnectionManager(connector)
    result: Dict[str, Any] = {"ok": False, "message": "", "mailboxes": [], "error": None}
    try:
        session = manager.open(config, "test")
    except SyncError as e:
        logging.error(f"IMAP connection error: {e}")
        result.update(message=str(e), error=str(e))
        return result

    try:
        result["mailboxes"] = [mailbox.path for mailbox in session.list()]
        result.update(ok=True, message="Successfully connected to IMAP server")
    except SyncError as e:
        logging.warning(f"Mailbox listing failed on {config.host}: {e}")
        result.update(ok=True, message="Successfully connected to IMAP server (mailbox listing failed)",
                      error=str(e))
    finally:
        manager.close_all()
    return result
