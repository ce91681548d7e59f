#!/usr/bin/env python3
"""
Mailbox enumeration and maintenance.
"""

import logging
from typing import Dict, List

from errors import EnumerationError, MailboxError
from models import MailboxDescriptor


def list_mailboxes(session) -> List[MailboxDescriptor]:
    """Mailboxes of an account in the order the server returned them."""
    try:
        mailboxes = session.list()
    except EnumerationError:
        raise
    except Exception as e:
        raise EnumerationError(f"Listing mailboxes failed: {e}") from e

    logging.info(f"📂 Retrieved {len(mailboxes)} mailboxes from {getattr(session, 'label', 'server')}")
    return list(mailboxes)


def select_mailboxes(mailboxes: List[MailboxDescriptor], max_mailboxes: int) -> List[MailboxDescriptor]:
    """Keep the first ``max_mailboxes`` entries, in server order."""
    selected = mailboxes[:max_mailboxes]
    if len(selected) < len(mailboxes):
        skipped = [mailbox.path for mailbox in mailboxes[max_mailboxes:]]
        logging.info(f"Mailbox cap of {max_mailboxes} reached, not processing: {skipped}")
    return selected


def empty_mailbox(session, path: str) -> None:
    """Remove every message from a mailbox, leaving an empty mailbox behind."""
    try:
        deleted = session.delete_all(path)
        logging.info(f"🗑️ Deleted {deleted} messages from {path}")
        return
    except MailboxError as e:
        logging.warning(f"Could not delete messages in {path}, recreating mailbox instead: {e}")

    if path.upper() != 'INBOX':
        session.mailbox_delete(path)
    session.mailbox_create(path)


def empty_mailboxes(session) -> Dict[str, List[str]]:
    """Empty every mailbox of an account. Returns emptied and failed paths."""
    result = {"emptied": [], "failed": []}
    for mailbox in list_mailboxes(session):
        try:
            empty_mailbox(session, mailbox.path)
            result["emptied"].append(mailbox.path)
        except MailboxError as e:
            logging.error(f"✗ Failed to empty mailbox {mailbox.path}: {e}")
            result["failed"].append(mailbox.path)
    logging.info(f"Emptied mailboxes: {', '.join(result['emptied'])}")
    return result
