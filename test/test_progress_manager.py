"""
Tests for progress_manager.py

Tests cover:
- Merge semantics and defaults of new records
- Log retention limit
- Stop requests
- JSON persistence and its failure mode
"""

import json
import os
import threading

import pytest

from errors import StoreError
from progress_manager import (
    MAX_LOG_ENTRIES,
    JsonProgressStore,
    ProgressStore,
    log_entry,
    new_progress_record,
)


class TestProgressStore:
    def test_unknown_session_returns_none(self):
        assert ProgressStore().get("missing") is None

    def test_first_update_starts_from_zeroed_record(self):
        store = ProgressStore()
        record = store.update("s1", {"current_mailbox": "INBOX"})

        expected = new_progress_record("s1")
        expected["current_mailbox"] = "INBOX"
        assert record == expected

    def test_update_merges_fields(self):
        store = ProgressStore()
        store.update("s1", {"total_messages": 10, "processed_messages": 2})
        record = store.update("s1", {"processed_messages": 5})

        assert record["total_messages"] == 10
        assert record["processed_messages"] == 5

    def test_logs_are_appended(self):
        store = ProgressStore()
        store.update("s1", {"logs": [log_entry("first")]})
        record = store.update("s1", {"logs": [log_entry("second")], "percentage": 10})

        assert [entry["message"] for entry in record["logs"]] == ["first", "second"]
        assert "timestamp" in record["logs"][0]

    def test_update_without_logs_keeps_existing_logs(self):
        store = ProgressStore()
        store.update("s1", {"logs": [log_entry("first")]})
        record = store.update("s1", {"logs": [], "percentage": 50})

        assert [entry["message"] for entry in record["logs"]] == ["first"]

    def test_log_retention_keeps_most_recent(self):
        store = ProgressStore()
        for i in range(MAX_LOG_ENTRIES + 20):
            store.update("s1", {"logs": [log_entry(f"line {i}")]})

        logs = store.get("s1")["logs"]
        assert len(logs) == MAX_LOG_ENTRIES
        assert logs[0]["message"] == "line 20"
        assert logs[-1]["message"] == f"line {MAX_LOG_ENTRIES + 19}"
        assert store.get("s1")["log_count"] == MAX_LOG_ENTRIES + 20

    def test_returned_records_are_copies(self):
        store = ProgressStore()
        store.update("s1", {"errors": ["one"]})

        record = store.get("s1")
        record["errors"].append("two")

        assert store.get("s1")["errors"] == ["one"]

    def test_caller_data_is_not_aliased(self):
        store = ProgressStore()
        errors = ["one"]
        store.update("s1", {"errors": errors})
        errors.append("two")

        assert store.get("s1")["errors"] == ["one"]

    def test_sessions_are_independent(self):
        store = ProgressStore()
        store.update("s1", {"percentage": 40})
        store.update("s2", {"percentage": 70})

        assert store.get("s1")["percentage"] == 40
        assert sorted(store.list_active()) == ["s1", "s2"]

    def test_clear(self):
        store = ProgressStore()
        store.update("s1", {"percentage": 40})
        store.clear("s1")
        store.clear("never-seen")

        assert store.get("s1") is None

    def test_request_stop(self):
        store = ProgressStore()
        store.update("s1", {"status": "processing"})

        assert store.request_stop("s1") is True
        record = store.get("s1")
        assert record["should_stop"] is True
        assert record["logs"][-1]["message"] == "Stop requested"

    def test_request_stop_for_unknown_session(self):
        store = ProgressStore()

        assert store.request_stop("missing") is False
        assert store.get("missing") is None


class TestJsonProgressStore:
    def test_completion_is_saved_immediately(self, tmp_path):
        path = tmp_path / "progress.json"
        store = JsonProgressStore(str(path), save_interval=3600)

        store.update("s1", {"percentage": 100, "is_complete": True})

        saved = json.loads(path.read_text())
        assert saved["s1"]["is_complete"] is True

    def test_updates_are_batched(self, tmp_path):
        path = tmp_path / "progress.json"
        store = JsonProgressStore(str(path), save_interval=3600)

        store.update("s1", {"percentage": 10})
        first = json.loads(path.read_text())
        store.update("s1", {"percentage": 20})

        assert json.loads(path.read_text()) == first
        store.save_progress_batch(force=True)
        assert json.loads(path.read_text())["s1"]["percentage"] == 20

    def test_records_survive_restart(self, tmp_path):
        path = tmp_path / "progress.json"
        store = JsonProgressStore(str(path))
        store.update("s1", {"current_mailbox": "Sent", "should_stop": True})

        reloaded = JsonProgressStore(str(path))

        assert reloaded.get("s1")["current_mailbox"] == "Sent"
        assert reloaded.get("s1")["should_stop"] is True

    def test_corrupt_file_starts_fresh(self, tmp_path):
        path = tmp_path / "progress.json"
        path.write_text("{not json")

        store = JsonProgressStore(str(path))

        assert store.list_active() == []

    def test_unwritable_file_raises_store_error(self, tmp_path):
        path = tmp_path / "missing-dir" / "progress.json"
        store = JsonProgressStore(str(path))

        with pytest.raises(StoreError):
            store.update("s1", {"is_complete": True})
        assert not os.path.exists(path)

    def test_save_replaces_file_without_leftovers(self, tmp_path):
        path = tmp_path / "progress.json"
        store = JsonProgressStore(str(path))

        store.update("s1", {"is_complete": True})
        store.save_progress()

        assert json.loads(path.read_text())["s1"]["is_complete"] is True
        assert sorted(os.listdir(tmp_path)) == ["progress.json"]

    def test_concurrent_saves_leave_valid_json(self, tmp_path):
        path = tmp_path / "progress.json"
        store = JsonProgressStore(str(path), save_interval=0)
        errors = []

        def writer(session_id):
            try:
                for i in range(20):
                    store.update(session_id, {"processed_messages": i, "logs": [log_entry(f"{session_id} {i}")]})
            except StoreError as e:
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(f"s{n}",)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        saved = json.loads(path.read_text())
        assert errors == []
        assert sorted(saved) == ["s0", "s1", "s2", "s3"]
        assert all(record["processed_messages"] == 19 for record in saved.values())
