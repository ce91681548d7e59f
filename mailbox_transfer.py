#!/usr/bin/env python3
"""
Copies the messages of one mailbox from the source to the destination.
"""

import time
import logging
from typing import Any, Callable, List

from errors import MessageError, SizeLimitError
from imap_client import SIZE_ITEMS, SOURCE_ITEMS
from models import MessageRef, SyncOptions
from utils import RetryResult, retry_operation


SYNCED = "synced"
SKIPPED_EMPTY = "skipped_empty"
SKIPPED_EXISTING = "skipped_existing"
SKIPPED_DRY_RUN = "skipped_dry_run"

SKIP_REASONS = {
    SKIPPED_EMPTY: "message size is zero",
    SKIPPED_EXISTING: "already present on destination",
    SKIPPED_DRY_RUN: "dry run",
}


def to_message_ref(item: Any) -> MessageRef:
    """Normalize a search result into a MessageRef, preferring UIDs.

    Bare integers are UIDs, as returned by a UID SEARCH. Mappings may carry
    ``uid`` and/or ``seq`` keys.
    """
    if isinstance(item, MessageRef):
        return item
    if isinstance(item, int) and not isinstance(item, bool) and item > 0:
        return MessageRef.uid(item)
    if isinstance(item, dict):
        if isinstance(item.get('uid'), int) and item['uid'] > 0:
            return MessageRef.uid(item['uid'])
        if isinstance(item.get('seq'), int) and item['seq'] > 0:
            return MessageRef.sequence(item['seq'])
    raise ValueError(f"Malformed message reference: {item!r}")


def _flag_text(flag) -> str:
    if isinstance(flag, bytes):
        return flag.decode('ascii', errors='replace')
    return str(flag)


class MailboxTransfer:
    """Message-level work for one source/destination session pair."""

    def __init__(self, source, destination, options: SyncOptions,
                 sleep: Callable[[float], None] = time.sleep):
        self.source = source
        self.destination = destination
        self.options = options
        self.sleep = sleep

    def prepare(self, path: str) -> int:
        """Open the mailbox on both sides and return the source message count.

        Raises MailboxError; an already existing destination mailbox is fine.
        """
        self.source.mailbox_open(path, readonly=True)
        logging.info(f"Opened source mailbox: {path}")

        if self.options.dry_run:
            logging.info(f"Dry run: not creating destination mailbox {path}")
        else:
            if self.destination.mailbox_create(path):
                logging.info(f"Created destination mailbox: {path}")
            else:
                logging.info(f"Destination mailbox {path} already exists")
            self.destination.mailbox_open(path)

        message_count = self.source.status(path)
        logging.info(f"Total messages in {path}: {message_count}")
        return message_count

    def resolve_working_set(self, path: str, message_count: int) -> List[MessageRef]:
        """References of the messages to copy, capped at the per-mailbox limit.

        Falls back to sequence numbers when the server cannot search.
        """
        limit = min(self.options.message_limit, message_count)
        try:
            results = self.source.search(limit)
            refs = [to_message_ref(item) for item in list(results)[:limit]]
            logging.info(f"Found {len(refs)} messages in {path} using search")
            return refs
        except (MessageError, ValueError, TypeError) as e:
            logging.warning(f"Search failed in {path}, using sequence numbers instead: {e}")
            return [MessageRef.sequence(number) for number in range(1, limit + 1)]

    def transfer_message(self, path: str, ref: MessageRef) -> str:
        """Copy one message. Returns SYNCED or one of the SKIPPED_* outcomes."""
        meta = self.source.fetch_one(ref, SIZE_ITEMS)
        size = meta.get('size') or 0
        logging.debug(f"Message {ref} in {path}: {size} bytes")

        if size == 0:
            logging.warning(f"Message size is zero for message {ref} in {path}, skipping")
            return SKIPPED_EMPTY

        limit = self.options.max_message_size_bytes
        if size > limit:
            raise SizeLimitError(
                f"Message too large ({size / 1024 / 1024:.1f}MB, limit {limit / 1024 / 1024:.1f}MB)"
            )

        message_id = meta.get('message_id')
        if self.options.skip_existing and not self.options.dry_run and message_id:
            if self.destination.message_exists(path, message_id):
                logging.info(f"Message {message_id} already exists in {path}, skipping")
                return SKIPPED_EXISTING

        data = self.source.fetch_one(ref, SOURCE_ITEMS)
        content = data.get('source')
        if not content:
            raise MessageError("Message source not available in fetch result")

        if self.options.dry_run:
            logging.info(f"Dry run: would copy {ref} ({len(content)} bytes) to {path}")
            return SKIPPED_DRY_RUN

        flags = [flag for flag in data.get('flags') or () if _flag_text(flag).lower() != '\\recent']
        self.destination.append(path, content, flags, data.get('internal_date'))
        logging.debug(f"Appended {ref} ({len(content)} bytes) to {path}")
        return SYNCED

    def copy_message(self, path: str, ref: MessageRef) -> RetryResult:
        """transfer_message under the retry policy."""
        return retry_operation(
            lambda: self.transfer_message(path, ref),
            max_retries=self.options.max_retries,
            delay=self.options.retry_delay_seconds,
            description=f"Copy of {ref} in {path}",
            sleep=self.sleep,
        )
