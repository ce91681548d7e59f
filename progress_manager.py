#!/usr/bin/env python3
"""
Progress store for IMAP sync runs.

Every run publishes into a record keyed by its session id. Updates are merged
into the existing record and log lines are appended, keeping only the most
recent MAX_LOG_ENTRIES. The stop signal travels the other way: an outside
caller sets ``should_stop`` and the running sync polls for it.
"""

import os
import copy
import json
import time
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional

from errors import StoreError


MAX_LOG_ENTRIES = 100


def utc_timestamp() -> str:
    """Current time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def log_entry(message: str) -> Dict[str, str]:
    return {"message": message, "timestamp": utc_timestamp()}


def new_progress_record(session_id: str) -> Dict[str, Any]:
    """Zeroed record used the first time a session is seen."""
    return {
        "session_id": session_id,
        "percentage": 0,
        "current_mailbox": "",
        "processed_messages": 0,
        "total_messages": 0,
        "processed_mailboxes": 0,
        "total_mailboxes": 0,
        "logs": [],
        "log_count": 0,
        "is_complete": False,
        "phase": "start",
        "status": "start",
        "outcome": None,
        "should_stop": False,
        "mailbox_summaries": [],
        "errors": [],
        "start_time": None,
        "end_time": None,
        "elapsed_seconds": 0,
    }


class ProgressStore:
    """Thread-safe in-memory progress store keyed by session id."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the record for a session, or None."""
        with self._lock:
            record = self._records.get(session_id)
            return copy.deepcopy(record) if record is not None else None

    def update(self, session_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``data`` into the session record and return the result."""
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                record = new_progress_record(session_id)

            new_logs = data.get("logs")
            merged = dict(record)
            merged.update({key: copy.deepcopy(value) for key, value in data.items() if key != "logs"})
            if new_logs:
                merged["logs"] = (record["logs"] + copy.deepcopy(list(new_logs)))[-MAX_LOG_ENTRIES:]
                merged["log_count"] = record.get("log_count", 0) + len(new_logs)
            else:
                merged["logs"] = record["logs"]

            self._records[session_id] = merged
            return copy.deepcopy(merged)

    def clear(self, session_id: str) -> None:
        with self._lock:
            self._records.pop(session_id, None)

    def list_active(self) -> List[str]:
        with self._lock:
            return list(self._records.keys())

    def request_stop(self, session_id: str) -> bool:
        """Set the stop flag for a running session. Returns False if unknown."""
        if self.get(session_id) is None:
            return False
        self.update(session_id, {
            "should_stop": True,
            "logs": [log_entry("Stop requested")],
        })
        logging.info(f"🛑 Stop signal sent to session {session_id}")
        return True


class JsonProgressStore(ProgressStore):
    """Progress store that also persists all records to a JSON file."""

    def __init__(self, progress_file: str = "progress.json", save_interval: float = 30.0):
        super().__init__()
        self.progress_file = progress_file
        self.save_interval = save_interval
        self._last_save_time = 0.0
        self._save_lock = threading.Lock()
        self._records = self.load_progress()

    def load_progress(self) -> Dict[str, Dict[str, Any]]:
        """Load previously saved records from the JSON file."""
        if os.path.exists(self.progress_file):
            try:
                with open(self.progress_file, 'r') as file:
                    records = json.load(file)
                if isinstance(records, dict):
                    return records
                logging.warning("Progress file has unexpected content, starting fresh")
            except (json.JSONDecodeError, IOError):
                logging.warning("Could not load progress file, starting fresh")
        return {}

    def save_progress(self) -> None:
        """Write every record to the JSON file.

        The file is replaced in one step, so readers never see a partial write.
        """
        temp_file = f"{self.progress_file}.tmp"
        with self._save_lock:
            with self._lock:
                snapshot = copy.deepcopy(self._records)
            try:
                with open(temp_file, 'w') as file:
                    json.dump(snapshot, file, indent=2)
                os.replace(temp_file, self.progress_file)
            except (IOError, TypeError) as e:
                logging.error(f"Failed to save progress: {e}")
                raise StoreError(f"Failed to save progress to {self.progress_file}: {e}") from e
            self._last_save_time = time.time()

    def save_progress_batch(self, force: bool = False) -> None:
        """Save at most once per save_interval unless forced."""
        if force or (time.time() - self._last_save_time) >= self.save_interval:
            self.save_progress()

    def update(self, session_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        record = super().update(session_id, data)
        self.save_progress_batch(force=bool(data.get("is_complete") or data.get("should_stop")))
        return record

    def clear(self, session_id: str) -> None:
        super().clear(session_id)
        self.save_progress()


# Shared by every run in this process unless a caller passes its own store.
default_store = ProgressStore()
