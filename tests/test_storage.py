import json
from datetime import datetime, timezone

import pytest

from pgclone.core.exceptions import StorageError
from pgclone.domain.models import (
    CloneHistoryEntry,
    CloneOptions,
    CloneStage,
    CloneStatus,
    CloneType,
    LogLevel,
    LogLine,
    SavedOperation,
)
from pgclone.infrastructure.storage import DATA_FILE_NAME, JSONAppStore

STARTED = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def history_entry(entry_id, status=CloneStatus.SUCCESS):
    return CloneHistoryEntry(
        id=entry_id,
        source_id="src",
        source_name="Production",
        destination_id="dst",
        destination_name="Staging",
        clone_type=CloneType.BOTH,
        status=status,
        started_at=STARTED,
        completed_at=STARTED,
        duration=0,
        logs=(
            LogLine(LogLevel.INFO, "Dumping shop", STARTED, stage=CloneStage.DUMPING),
            LogLine(LogLevel.WARNING, "pg_dump: warning: odd", STARTED, source="pg_dump"),
        ),
    )


def test_missing_file_reads_as_empty(tmp_path):
    store = JSONAppStore(tmp_path / "nothing-here")

    assert store.list_profiles() == []
    assert store.list_history() == []
    assert store.list_saved_operations() == []


def test_corrupt_file_reads_as_empty(tmp_path):
    (tmp_path / DATA_FILE_NAME).write_text("{not json", encoding="utf-8")
    assert JSONAppStore(tmp_path).list_history() == []


def test_profiles_round_trip_through_the_file(tmp_path, source_profile):
    store = JSONAppStore(tmp_path)
    store.save_profile(source_profile)

    loaded = JSONAppStore(tmp_path).get_profile("src")

    assert loaded == source_profile
    data = json.loads((tmp_path / DATA_FILE_NAME).read_text(encoding="utf-8"))
    assert data["profiles"][0]["database"] == "shop"
    assert set(data) >= {"profiles", "history", "tags", "savedOperations"}


def test_history_is_newest_first_and_bounded(tmp_path):
    store = JSONAppStore(tmp_path, history_limit=2)
    for entry_id in ("one", "two", "three"):
        store.add_history(history_entry(entry_id))

    assert [e.id for e in store.list_history()] == ["three", "two"]


def test_history_entry_keeps_logs(tmp_path):
    store = JSONAppStore(tmp_path)
    store.add_history(history_entry("run-1", CloneStatus.CANCELLED))

    entry = store.get_history_entry("run-1")

    assert entry.status is CloneStatus.CANCELLED
    assert entry.logs[0].stage is CloneStage.DUMPING
    assert entry.logs[1].source == "pg_dump"
    assert store.get_history_entry("run-2") is None


def test_malformed_history_entries_are_skipped(tmp_path):
    store = JSONAppStore(tmp_path)
    store.add_history(history_entry("good"))
    data = json.loads((tmp_path / DATA_FILE_NAME).read_text(encoding="utf-8"))
    data["history"].append({"status": "success"})
    (tmp_path / DATA_FILE_NAME).write_text(json.dumps(data), encoding="utf-8")

    assert [e.id for e in store.list_history()] == ["good"]


def test_plain_string_log_lines_are_accepted(tmp_path):
    entry = history_entry("legacy").to_dict()
    entry["logs"] = ["[ERROR] pg_restore failed", "no level here"]
    (tmp_path / DATA_FILE_NAME).write_text(json.dumps({"history": [entry]}), encoding="utf-8")

    logs = JSONAppStore(tmp_path).list_history()[0].logs

    assert logs[0].level is LogLevel.ERROR and logs[0].message == "pg_restore failed"
    assert logs[1].level is LogLevel.INFO


def test_clear_history(tmp_path):
    store = JSONAppStore(tmp_path)
    store.add_history(history_entry("one"))
    store.clear_history()
    assert store.list_history() == []


def test_saved_operation_names_are_unique(tmp_path):
    store = JSONAppStore(tmp_path)
    first = SavedOperation.from_options("nightly", CloneOptions("src", "dst"))
    second = SavedOperation.from_options("nightly", CloneOptions("src", "dst", clone_type="structure"))
    store.save_operation(first)
    store.save_operation(second)

    operations = store.list_saved_operations()

    assert [o.id for o in operations] == [second.id]
    assert store.get_saved_operation("nightly").clone_type is CloneType.STRUCTURE
    assert store.get_saved_operation(second.id).name == "nightly"
    assert store.delete_saved_operation("nightly") is True
    assert store.get_saved_operation("nightly") is None


def test_write_failure_raises_storage_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file where a directory should be", encoding="utf-8")
    store = JSONAppStore(blocker / "data")

    with pytest.raises(StorageError):
        store.add_history(history_entry("one"))
