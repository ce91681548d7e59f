#!/usr/bin/env python3
"""
Main sync orchestrator for the IMAP to IMAP sync engine.

A run moves through start -> connecting -> enumerating -> processing ->
finalizing and ends as completed, stopped or failed. All state visible to the
outside world goes through the progress store.
"""

import time
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import psutil

from connection_manager import ConnectionManager, open_session
from errors import EnumerationError, ImapConnectionError, MailboxError, StoreError
from mailbox_transfer import MailboxTransfer, SKIP_REASONS, SYNCED
from mailboxes import list_mailboxes, select_mailboxes
from models import ConnectionConfig, MailboxDescriptor, MailboxStat, MessageRef, RunStatistics, SyncOptions
from progress_manager import ProgressStore, default_store, log_entry


BASE_PERCENTAGE = 5
MESSAGE_PERCENTAGE_SPAN = 90
MAX_RUNNING_PERCENTAGE = 95
SYNC_HEARTBEAT = 5
MIN_PUBLISH_INTERVAL = 10


def message_percentage(processed: int, total: int) -> int:
    """Progress while messages are being copied, capped at 95."""
    if total <= 0:
        return BASE_PERCENTAGE
    percentage = BASE_PERCENTAGE + (processed * MESSAGE_PERCENTAGE_SPAN) // total
    return min(MAX_RUNNING_PERCENTAGE, percentage)


def mailbox_percentage(index: int, mailbox_count: int) -> int:
    """Progress by mailbox position, used while no messages are known."""
    if mailbox_count <= 0:
        return BASE_PERCENTAGE
    percentage = BASE_PERCENTAGE + ((index + 1) * MESSAGE_PERCENTAGE_SPAN) // mailbox_count
    return min(MAX_RUNNING_PERCENTAGE, percentage)


class SyncOrchestrator:
    """Runs one sync between a source and a destination account."""

    def __init__(self, session_id: str, source_config: ConnectionConfig,
                 destination_config: ConnectionConfig, options: Optional[SyncOptions] = None,
                 store: Optional[ProgressStore] = None, connector: Callable = open_session,
                 sleep: Callable[[float], None] = time.sleep):
        self.session_id = session_id
        self.source_config = source_config
        self.destination_config = destination_config
        self.options = options or SyncOptions()
        self.store = store if store is not None else default_store
        self.connector = connector
        self.sleep = sleep

        self.stats: Optional[RunStatistics] = None
        self.local_record = ProgressStore()
        self._percentage = 0
        self._started_at: Optional[datetime] = None
        self._finalized = False

    # Progress store access

    def publish(self, data: Dict[str, Any], message: Optional[str] = None) -> None:
        """Merge an update into the progress record.

        A local copy is kept so store failures only cost visibility.
        """
        data = dict(data)
        if message:
            data["logs"] = [log_entry(message)]
        if "percentage" in data:
            self._percentage = max(self._percentage, data["percentage"])
            data["percentage"] = self._percentage

        self.local_record.update(self.session_id, data)
        try:
            self.store.update(self.session_id, data)
        except StoreError as e:
            logging.warning(f"⚠️ Progress store update failed for {self.session_id}: {e}")

    def stop_requested(self) -> bool:
        try:
            record = self.store.get(self.session_id)
        except StoreError as e:
            logging.warning(f"⚠️ Could not read stop flag for {self.session_id}: {e}")
            return False
        return bool(record and record.get("should_stop"))

    @property
    def record(self) -> Dict[str, Any]:
        """Latest progress record as this run knows it."""
        return self.local_record.get(self.session_id) or {}

    # Run

    def run(self) -> RunStatistics:
        """Run the complete sync. Never raises for sync failures."""
        self._started_at = datetime.now(timezone.utc)
        self.stats = RunStatistics(start_time=self._started_at.isoformat())
        process = psutil.Process()
        initial_memory = process.memory_info().rss / (1024 * 1024)

        try:
            self.store.clear(self.session_id)
        except StoreError as e:
            logging.warning(f"⚠️ Could not reset progress for {self.session_id}: {e}")
        self.publish({
            "phase": "start",
            "status": "start",
            "start_time": self.stats.start_time,
        }, "Starting sync process")
        logging.info(f"🚀 Starting IMAP sync {self.session_id}: "
                     f"{self.source_config.describe()} -> {self.destination_config.describe()}")

        connections = ConnectionManager(self.connector)
        try:
            self.publish({"phase": "running", "status": "connecting"},
                         "Connecting to source and destination servers")
            source = connections.open(self.source_config, "source")
            destination = connections.open(self.destination_config, "destination")
            self.publish({"status": "enumerating"}, "Connected to source and destination servers")

            mailboxes = select_mailboxes(list_mailboxes(source), self.options.max_mailboxes)
            self.stats.total_mailboxes = len(mailboxes)
            self.publish({
                "status": "processing",
                "total_mailboxes": len(mailboxes),
                "total_messages": 0,
                "percentage": BASE_PERCENTAGE,
            }, f"Found {len(mailboxes)} mailboxes")

            transfer = MailboxTransfer(source, destination, self.options, sleep=self.sleep)
            self.process_mailboxes(mailboxes, transfer)

        except (ImapConnectionError, EnumerationError) as e:
            logging.error(f"❌ Sync {self.session_id} failed: {e}")
            self.stats.failed = True
            self.stats.errors.append(str(e))
        except Exception as e:
            logging.exception(f"❌ Unexpected error in sync {self.session_id}")
            self.stats.failed = True
            self.stats.errors.append(f"Unexpected error: {e}")
        finally:
            try:
                self.finalize()
            finally:
                connections.close_all()

        final_memory = process.memory_info().rss / (1024 * 1024)
        logging.info(f"📊 Memory usage: {initial_memory:.1f}MB → {final_memory:.1f}MB "
                     f"(Δ{final_memory - initial_memory:+.1f}MB)")
        return self.stats

    def process_mailboxes(self, mailboxes: List[MailboxDescriptor], transfer: MailboxTransfer) -> None:
        mailbox_count = len(mailboxes)
        for index, mailbox in enumerate(mailboxes):
            if self.stop_requested():
                self.mark_stopped()
                break
            if not self.process_mailbox(index, mailbox_count, mailbox, transfer):
                break

    def process_mailbox(self, index: int, mailbox_count: int, mailbox: MailboxDescriptor,
                        transfer: MailboxTransfer) -> bool:
        """Copy one mailbox. Returns False if a stop request interrupted it."""
        stats = self.stats
        path = mailbox.path
        logging.info(f"📂 Processing mailbox: {path} ({index + 1}/{mailbox_count})")
        self.publish({
            "current_mailbox": path,
            "processed_mailboxes": stats.processed_mailboxes,
        }, f"Processing mailbox: {path} ({index + 1}/{mailbox_count})")

        mailbox_stat = MailboxStat(name=path)
        try:
            message_count = transfer.prepare(path)
        except MailboxError as e:
            error = f"Error processing mailbox {path}: {e}"
            logging.error(f"✗ {error}")
            stats.errors.append(error)
            self.publish({"errors": stats.errors}, error)
            return True

        if message_count == 0:
            self.complete_mailbox(index, mailbox_count, mailbox_stat, f"Completed empty mailbox: {path}")
            return True

        refs = transfer.resolve_working_set(path, message_count)
        mailbox_stat.total_messages = len(refs)
        stats.total_emails += len(refs)
        self.publish({"total_messages": stats.total_emails},
                     f"{path}: {message_count} messages on server, processing {len(refs)}")

        batch_size = self.options.batch_size
        for batch_start in range(0, len(refs), batch_size):
            batch = refs[batch_start:batch_start + batch_size]
            for ref in batch:
                if self.stop_requested():
                    self.interrupt_mailbox(mailbox_stat)
                    return False
                self.transfer_one(transfer, path, ref, mailbox_stat)
            logging.debug(f"Finished batch of {len(batch)} messages in {path}")

        self.complete_mailbox(
            index, mailbox_count, mailbox_stat,
            f"Completed mailbox: {path} (synced {mailbox_stat.synced_messages}, "
            f"skipped {mailbox_stat.skipped_messages})"
        )
        return True

    def transfer_one(self, transfer: MailboxTransfer, path: str, ref: MessageRef,
                     mailbox_stat: MailboxStat) -> None:
        stats = self.stats
        result = transfer.copy_message(path, ref)
        heartbeat = False

        if result.ok and result.value == SYNCED:
            mailbox_stat.synced_messages += 1
            stats.synced_emails += 1
            heartbeat = stats.synced_emails % SYNC_HEARTBEAT == 0
        else:
            mailbox_stat.skipped_messages += 1
            stats.skipped_emails += 1
            if result.ok:
                logging.info(f"Skipped message {ref} in {path}: {SKIP_REASONS.get(result.value, result.value)}")
            else:
                error = f"Error syncing message in {path} ({ref}): {result.error}"
                logging.error(f"❌ {error} (after {result.attempts} attempts)")
                stats.errors.append(error)

        processed_in_mailbox = mailbox_stat.processed_messages
        interval = max(MIN_PUBLISH_INTERVAL, self.options.batch_size)
        if heartbeat:
            message = (f"Successfully synced {stats.synced_emails} messages. "
                       f"Progress: {stats.processed_emails}/{stats.total_emails}")
        elif processed_in_mailbox % interval == 0 or processed_in_mailbox == mailbox_stat.total_messages:
            message = f"Processing messages: {stats.processed_emails}/{stats.total_emails} (mailbox: {path})"
        else:
            return

        self.publish({
            "processed_messages": stats.processed_emails,
            "total_messages": stats.total_emails,
            "percentage": message_percentage(stats.processed_emails, stats.total_emails),
            "errors": stats.errors,
        }, message)

    def complete_mailbox(self, index: int, mailbox_count: int, mailbox_stat: MailboxStat, message: str) -> None:
        stats = self.stats
        stats.mailboxes.append(mailbox_stat)
        stats.processed_mailboxes += 1

        if stats.total_emails > 0:
            percentage = message_percentage(stats.processed_emails, stats.total_emails)
        else:
            percentage = mailbox_percentage(index, mailbox_count)

        logging.info(f"✓ {message}")
        self.publish({
            "processed_mailboxes": stats.processed_mailboxes,
            "processed_messages": stats.processed_emails,
            "total_messages": stats.total_emails,
            "percentage": percentage,
            "mailbox_summaries": [stat.to_dict() for stat in stats.mailboxes],
            "errors": stats.errors,
        }, message)

    def interrupt_mailbox(self, mailbox_stat: MailboxStat) -> None:
        """Summarize a mailbox cut short by a stop request with what was done."""
        unprocessed = mailbox_stat.total_messages - mailbox_stat.processed_messages
        mailbox_stat.total_messages -= unprocessed
        self.stats.total_emails -= unprocessed
        self.stats.mailboxes.append(mailbox_stat)
        logging.info(f"Mailbox {mailbox_stat.name} interrupted, {unprocessed} messages left unprocessed")
        self.mark_stopped()

    def mark_stopped(self) -> None:
        self.stats.stopped = True
        logging.info(f"🛑 Sync {self.session_id} stopped by user")
        self.publish({"status": "stopped"}, "Sync stopped by user")

    def finalize(self) -> None:
        """Publish the terminal record. Runs exactly once per run."""
        if self._finalized:
            return
        self._finalized = True
        self.publish({"status": "finalizing"})

        stats = self.stats
        end_time = datetime.now(timezone.utc)
        stats.end_time = end_time.isoformat()
        stats.elapsed_seconds = int(round((end_time - self._started_at).total_seconds()))

        outcome = stats.outcome
        if outcome == "failed":
            phase, status = "error", "failed"
            message = f"Error: {stats.errors[-1] if stats.errors else 'Unknown error'}"
        elif outcome == "stopped":
            phase, status = "complete", "stopped"
            message = (f"Sync stopped by user after {stats.processed_mailboxes} mailboxes. "
                       f"Synced {stats.synced_emails} messages, skipped {stats.skipped_emails} messages "
                       f"in {stats.elapsed_seconds} seconds.")
        else:
            phase, status = "complete", "completed"
            message = (f"Sync completed {'successfully' if outcome == 'completed' else f'with {len(stats.errors)} errors'}. "
                       f"Synced {stats.synced_emails} messages, skipped {stats.skipped_emails} messages "
                       f"across {stats.processed_mailboxes} mailboxes in {stats.elapsed_seconds} seconds.")

        logging.info(f"=== SYNC {status.upper()} ===")
        logging.info(f"Mailboxes processed: {stats.processed_mailboxes}/{stats.total_mailboxes}")
        logging.info(f"Messages synced: {stats.synced_emails}, skipped: {stats.skipped_emails}")
        logging.info(f"Errors: {len(stats.errors)}")
        logging.info(f"Elapsed time: {stats.elapsed_seconds}s")

        self.publish({
            "percentage": 100,
            "is_complete": True,
            "phase": phase,
            "status": status,
            "outcome": outcome,
            "processed_messages": stats.processed_emails,
            "total_messages": stats.total_emails,
            "processed_mailboxes": stats.processed_mailboxes,
            "total_mailboxes": stats.total_mailboxes,
            "mailbox_summaries": [stat.to_dict() for stat in stats.mailboxes],
            "errors": stats.errors,
            "start_time": stats.start_time,
            "end_time": stats.end_time,
            "elapsed_seconds": stats.elapsed_seconds,
        }, message)


def run_sync(session_id: str, source_config: ConnectionConfig, destination_config: ConnectionConfig,
             options: Optional[SyncOptions] = None, store: Optional[ProgressStore] = None,
             **kwargs) -> RunStatistics:
    """Run a sync in the calling thread and return its statistics."""
    orchestrator = SyncOrchestrator(session_id, source_config, destination_config,
                                    options=options, store=store, **kwargs)
    return orchestrator.run()


def start_sync(session_id: str, source_config: ConnectionConfig, destination_config: ConnectionConfig,
               options: Optional[SyncOptions] = None, store: Optional[ProgressStore] = None,
               **kwargs) -> threading.Thread:
    """Start a sync in a background thread. Progress is observed through the store."""
    thread = threading.Thread(
        target=run_sync,
        args=(session_id, source_config, destination_config),
        kwargs=dict(kwargs, options=options, store=store),
        name=f"ImapSync-{session_id}",
        daemon=True,
    )
    thread.start()
    return thread
