#!/usr/bin/env python3
"""
IMAP to IMAP Sync

Copies the mailboxes and messages of one IMAP account to another, possibly on
a different server. Progress is shown live and a run can be stopped cleanly
with Ctrl+C.
"""

import sys
import signal
import logging
import argparse
import threading
from datetime import datetime
from typing import Optional

# Progress bar
from tqdm import tqdm

from config_manager import ConfigManager
from connection_manager import ConnectionManager, probe
from errors import StoreError, SyncError
from mailboxes import empty_mailboxes
from progress_manager import JsonProgressStore, ProgressStore
from transfer_orchestrator import start_sync


def setup_logging(verbose: bool = False, log_file: str = 'imap_sync.log') -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )


def install_stop_handlers() -> threading.Event:
    """Turn SIGINT/SIGTERM into a stop event for monitor() to forward.

    The handler never touches the progress store, whose lock the main thread
    may hold when the signal arrives.
    """
    stop_event = threading.Event()

    def signal_handler(signum, frame):
        logging.info(f"🛑 Received signal {signum}, initiating graceful shutdown...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)   # Ctrl+C
    signal.signal(signal.SIGTERM, signal_handler)  # Termination request
    return stop_event


def forward_stop(store: ProgressStore, session_id: str) -> bool:
    """Write the stop flag. Returns False if it has to be retried later.

    The record only exists once the worker has published its first update.
    """
    try:
        return store.request_stop(session_id)
    except StoreError as e:
        logging.error(f"❌ Could not persist stop request for {session_id}: {e}")
        return False


def monitor(store: ProgressStore, session_id: str, worker, poll_interval: float = 1.0,
            stop_event: Optional[threading.Event] = None) -> dict:
    """Follow a running sync on a progress bar until it finishes."""
    pbar = tqdm(total=100, desc="📤 IMAP Sync", unit="%")
    shown = 0
    seen_logs = 0
    stop_forwarded = False
    record = {}
    try:
        while True:
            worker.join(timeout=poll_interval)
            if stop_event is not None and stop_event.is_set() and not stop_forwarded:
                stop_forwarded = forward_stop(store, session_id)

            record = store.get(session_id) or {}
            percentage = record.get('percentage', 0)
            if percentage > shown:
                pbar.update(percentage - shown)
                shown = percentage
            mailbox = record.get('current_mailbox') or '-'
            pbar.set_description(
                f"📤 {mailbox} ({record.get('processed_messages', 0)}/{record.get('total_messages', 0)})"
            )

            # log_count keeps growing after the log list is capped
            logs = record.get('logs', [])
            log_count = record.get('log_count', len(logs))
            if log_count < seen_logs:
                seen_logs = 0
            new_entries = min(log_count - seen_logs, len(logs))
            for entry in logs[len(logs) - new_entries:]:
                pbar.write(entry['message'])
            seen_logs = log_count

            if not worker.is_alive():
                break
    finally:
        pbar.close()
    return record


def run_test_connection(config_manager: ConfigManager) -> int:
    exit_code = 0
    for section in ('source', 'destination'):
        result = probe(config_manager.connection_config(section))
        if result['ok']:
            logging.info(f"✅ {section}: {result['message']} ({len(result['mailboxes'])} mailboxes)")
        else:
            logging.error(f"❌ {section}: {result['message']}")
            exit_code = 1
    return exit_code


def run_empty_destination(config_manager: ConfigManager) -> int:
    connections = ConnectionManager()
    try:
        session = connections.open(config_manager.connection_config('destination'), 'destination')
        result = empty_mailboxes(session)
    finally:
        connections.close_all()
    return 1 if result['failed'] else 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Copy mailboxes and messages between two IMAP accounts')
    parser.add_argument('--config', default='config.yaml', help='Configuration file path')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose logging')
    parser.add_argument('--test-connection', action='store_true', help='Only check that both accounts are reachable')
    parser.add_argument('--empty-destination', action='store_true',
                        help='Delete every message on the destination account before syncing')
    parser.add_argument('--dry-run', action='store_true', help='Read everything but do not write to the destination')
    parser.add_argument('--session-id', default=None, help='Identifier for this run in the progress store')
    parser.add_argument('--progress-file', default=None, help='Persist progress records to this JSON file')

    args = parser.parse_args()
    setup_logging(args.verbose)

    try:
        config_manager = ConfigManager(args.config)
        source_config = config_manager.connection_config('source')
        destination_config = config_manager.connection_config('destination')
        options = config_manager.sync_options(dry_run=True if args.dry_run else None)

        if args.test_connection:
            return run_test_connection(config_manager)

        if args.empty_destination:
            if options.dry_run:
                logging.info("Dry run: not emptying the destination account")
            else:
                logging.info("=== EMPTYING DESTINATION ===")
                if run_empty_destination(config_manager):
                    logging.error("Some destination mailboxes could not be emptied")
                    return 1

        progress_file = args.progress_file or config_manager.progress_file
        store = JsonProgressStore(progress_file) if progress_file else ProgressStore()
        session_id = args.session_id or datetime.now().strftime("%Y-%m-%d_%H-%M-%S")

        stop_event = install_stop_handlers()
        worker = start_sync(session_id, source_config, destination_config, options, store=store)
        record = monitor(store, session_id, worker, stop_event=stop_event)

    except (FileNotFoundError, ValueError, SyncError) as e:
        logging.error(f"Sync failed: {e}")
        return 1

    for mailbox in record.get('mailbox_summaries', []):
        logging.info(f"  {mailbox['name']}: {mailbox['synced_messages']} synced, "
                     f"{mailbox['skipped_messages']} skipped of {mailbox['total_messages']}")
    for error in record.get('errors', []):
        logging.error(f"  {error}")

    outcome = record.get('outcome')
    logging.info(f"Sync finished: {outcome}")
    return 0 if outcome in ('completed', 'stopped') else 1


if __name__ == "__main__":
    sys.exit(main())
