"""Tests for the snapshot storage engine."""

import io
import os
import threading
import zipfile

import pytest
import hypothesis.strategies as st
from hypothesis import given, HealthCheck, settings

from conftest import FakeClock, read_tree, write_tree
from snapjournal.errors import (
    BackupError,
    CorruptContainerError,
    NotFoundError,
    OperationCancelled,
    SnapshotIOError,
)
from snapjournal.lock import StorageLock
from snapjournal.logger import ErrorCode
from snapjournal.storage import SnapshotStorage


def make_storage(workspace, clock=None, **kwargs) -> SnapshotStorage:
    return SnapshotStorage(workspace, clock=clock or FakeClock(), **kwargs)


def container_names(storage: SnapshotStorage) -> list:
    if not storage.storage_path.exists():
        return []
    return sorted(p.name for p in storage.storage_path.glob("*.zip"))


class TestCreate:

    def test_excluded_log_file_is_not_counted(self, workspace, clock):
        write_tree(workspace, {"a.txt": "hello", "b.log": "noise"})
        storage = make_storage(workspace, clock)

        result = storage.create(message="first")

        assert result.record.file_count == 1
        assert result.record.message == "first"
        assert storage.list() == [result.record]

    def test_size_is_container_size(self, workspace, clock):
        write_tree(workspace, {"a.txt": "hello"})
        storage = make_storage(workspace, clock)
        record = storage.create().record
        assert record.size == storage.container_path(record.id).stat().st_size

    def test_record_fields(self, workspace, clock):
        write_tree(workspace, {"a.txt": "hello"})
        record = make_storage(workspace, clock).create().record
        assert record.id == f"snapshot_{clock.now}"
        assert record.timestamp == clock.now
        assert record.kind == "snapshot"
        assert record.workspace_path == str(workspace.resolve())

    def test_storage_directory_is_never_captured(self, workspace, clock):
        write_tree(workspace, {"a.txt": "a"})
        storage = make_storage(workspace, clock)
        storage.create()
        clock.advance()
        second = storage.create()
        assert second.record.file_count == 1

    def test_empty_workspace(self, workspace, clock):
        record = make_storage(workspace, clock).create().record
        assert record.file_count == 0

    def test_far_future_mtime_is_captured(self, workspace, clock):
        write_tree(workspace, {"a.txt": "hello"})
        os.utime(workspace / "a.txt", (4_500_000_000, 4_500_000_000))
        storage = make_storage(workspace, clock)

        record = storage.create().record

        assert record.file_count == 1
        with zipfile.ZipFile(storage.container_path(record.id)) as zf:
            assert zf.getinfo("a.txt").date_time == (2107, 12, 31, 23, 59, 58)

    def test_far_future_mtime_survives_restore_backup(self, workspace, clock):
        write_tree(workspace, {"a.txt": "hello"})
        storage = make_storage(workspace, clock)
        record = storage.create().record
        os.utime(workspace / "a.txt", (4_500_000_000, 4_500_000_000))
        clock.advance()

        result = storage.restore(record.id)

        assert result.backup is not None
        assert result.backup.file_count == 1

    def test_include_and_exclude_patterns(self, workspace, clock):
        write_tree(workspace, {"src/a.py": "a", "src/b.js": "b", "src/skip.py": "s"})
        result = make_storage(workspace, clock).create(
            include_patterns=["*.py"], exclude_patterns=["skip*"]
        )
        assert result.record.file_count == 1

    def test_missing_source_raises(self, workspace, clock):
        with pytest.raises(SnapshotIOError):
            make_storage(workspace, clock).create(source_dir=workspace / "missing")

    def test_cancel_leaves_nothing_behind(self, workspace, clock):
        write_tree(workspace, {"a.txt": "a"})
        storage = make_storage(workspace, clock)
        event = threading.Event()
        event.set()
        with pytest.raises(OperationCancelled):
            storage.create(cancel_event=event)
        assert container_names(storage) == []
        assert storage.list() == []
        assert not any(p.name.endswith(".tmp") for p in storage.storage_path.iterdir())

    def test_progress_callback(self, workspace, clock):
        write_tree(workspace, {"a.txt": "a", "b.txt": "b"})
        phases = []
        make_storage(workspace, clock).create(progress_callback=lambda p: phases.append(p.phase))
        assert "scan" in phases
        assert "pack" in phases


class TestOrdering:

    def test_later_snapshot_listed_first(self, workspace, clock):
        write_tree(workspace, {"a.txt": "a"})
        storage = make_storage(workspace, clock)
        first = storage.create().record
        clock.advance(1)
        second = storage.create().record
        assert [r.id for r in storage.list()] == [second.id, first.id]

    def test_same_millisecond_gets_distinct_increasing_timestamps(self, workspace, clock):
        storage = make_storage(workspace, clock)
        first = storage.create().record
        second = storage.create().record
        assert second.timestamp == first.timestamp + 1
        assert second.id != first.id

    def test_clock_going_backwards_still_increases(self, workspace, clock):
        storage = make_storage(workspace, clock)
        first = storage.create().record
        clock.advance(-60_000)
        second = storage.create().record
        assert second.timestamp > first.timestamp
        assert storage.list()[0].id == second.id

    def test_orphan_container_forces_sequence_suffix(self, workspace, clock):
        storage = make_storage(workspace, clock)
        storage.ensure_storage_dir()
        orphan = storage.container_path(f"snapshot_{clock.now}")
        with zipfile.ZipFile(orphan, "w"):
            pass
        record = storage.create().record
        assert record.id == f"snapshot_{clock.now}-01"

    @given(steps=st.lists(st.integers(min_value=-5, max_value=5), min_size=1, max_size=6))
    @settings(suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_list_is_always_descending(self, tmp_path_factory, steps):
        workspace = tmp_path_factory.mktemp("ws")
        clock = FakeClock()
        storage = make_storage(workspace, clock)
        for step in steps:
            clock.advance(step)
            storage.create()
        timestamps = [r.timestamp for r in storage.list()]
        assert timestamps == sorted(timestamps, reverse=True)
        assert len(set(timestamps)) == len(steps)


class TestGetAndLoad:

    def test_get_known_and_unknown(self, workspace, clock):
        storage = make_storage(workspace, clock)
        record = storage.create().record
        assert storage.get(record.id) == record
        assert storage.get("snapshot_0") is None

    def test_list_before_any_snapshot_creates_nothing(self, workspace, clock):
        storage = make_storage(workspace, clock)
        assert storage.list() == []
        assert not storage.storage_path.exists()

    def test_load_container(self, workspace, clock):
        write_tree(workspace, {"a.txt": "a"})
        storage = make_storage(workspace, clock)
        record = storage.create().record
        data = storage.load_container(record.id)
        assert zipfile.ZipFile(io.BytesIO(data)).namelist() == ["a.txt"]

    def test_load_container_unknown(self, workspace, clock):
        with pytest.raises(NotFoundError):
            make_storage(workspace, clock).load_container("snapshot_1")

    @pytest.mark.parametrize("bad_id", ["../metadata", "a/b", "", ".lock"])
    def test_path_like_ids_are_not_found(self, workspace, clock, bad_id):
        with pytest.raises(NotFoundError):
            make_storage(workspace, clock).container_path(bad_id)


class TestRestore:

    def test_round_trip(self, workspace, clock):
        original = {"a.txt": "alpha", "src/b.bin": bytes(range(256)), "empty": b""}
        write_tree(workspace, original)
        storage = make_storage(workspace, clock)
        record = storage.create().record

        write_tree(workspace, {"a.txt": "changed", "src/b.bin": b"\x00"})
        (workspace / "empty").unlink()
        clock.advance()
        result = storage.restore(record.id, create_backup=False)

        assert result.files_restored == 3
        assert result.backup is None
        tree = read_tree(workspace)
        assert tree["a.txt"] == b"alpha"
        assert tree["src/b.bin"] == bytes(range(256))
        assert tree["empty"] == b""

    def test_files_not_in_snapshot_are_left_alone(self, workspace, clock):
        write_tree(workspace, {"a.txt": "a"})
        storage = make_storage(workspace, clock)
        record = storage.create().record
        write_tree(workspace, {"new.txt": "n"})
        storage.restore(record.id, create_backup=False)
        assert (workspace / "new.txt").read_text() == "n"

    def test_restore_into_other_directory(self, workspace, clock, tmp_path):
        write_tree(workspace, {"a.txt": "a"})
        storage = make_storage(workspace, clock)
        record = storage.create().record
        target = tmp_path / "elsewhere"
        result = storage.restore(record.id, target_dir=target, create_backup=False)
        assert result.target == target.resolve()
        assert (target / "a.txt").read_text() == "a"

    def test_backup_taken_before_restore(self, workspace, clock):
        write_tree(workspace, {"a.txt": "v1"})
        storage = make_storage(workspace, clock)
        snapshot = storage.create().record

        write_tree(workspace, {"a.txt": "v2"})
        clock.advance()
        result = storage.restore(snapshot.id)

        assert (workspace / "a.txt").read_text() == "v1"
        backup = result.backup
        assert backup is not None
        assert backup.kind == "backup"
        assert backup.id.startswith("backup_")
        assert snapshot.id in backup.message
        assert storage.get(backup.id) == backup
        assert [r.id for r in storage.list(include_backups=False)] == [snapshot.id]

        # The backup is restorable like any snapshot
        clock.advance()
        storage.restore(backup.id, create_backup=False)
        assert (workspace / "a.txt").read_text() == "v2"

    def test_unknown_id_touches_nothing(self, workspace, clock):
        write_tree(workspace, {"a.txt": "keep"})
        storage = make_storage(workspace, clock)
        storage.create()
        before = read_tree(workspace)
        containers_before = container_names(storage)

        with pytest.raises(NotFoundError) as exc_info:
            storage.restore("snapshot_42", create_backup=True)

        assert exc_info.value.snapshot_id == "snapshot_42"
        assert read_tree(workspace) == before
        assert container_names(storage) == containers_before
        assert storage.list(include_backups=True) == storage.list(include_backups=False)

    def test_unknown_id_without_storage_dir(self, workspace, clock):
        storage = make_storage(workspace, clock)
        with pytest.raises(NotFoundError):
            storage.restore("snapshot_1")
        assert not storage.storage_path.exists()

    def test_record_without_container(self, workspace, clock):
        storage = make_storage(workspace, clock)
        record = storage.create().record
        storage.container_path(record.id).unlink()
        with pytest.raises(NotFoundError) as exc_info:
            storage.restore(record.id)
        assert exc_info.value.error_code == ErrorCode.CONTAINER_MISSING

    def test_backup_failure_aborts_restore(self, workspace, clock, monkeypatch):
        write_tree(workspace, {"a.txt": "v1"})
        storage = make_storage(workspace, clock)
        snapshot = storage.create().record
        write_tree(workspace, {"a.txt": "v2"})

        def failing_write(*args, **kwargs):
            raise SnapshotIOError("disk full")

        monkeypatch.setattr("snapjournal.backup.write_container", failing_write)
        with pytest.raises(BackupError):
            storage.restore(snapshot.id)

        assert (workspace / "a.txt").read_text() == "v2"
        assert [r.id for r in storage.list()] == [snapshot.id]

    def test_corrupt_container_detected_before_backup(self, workspace, clock):
        write_tree(workspace, {"a.txt": "v1"})
        storage = make_storage(workspace, clock)
        snapshot = storage.create().record
        storage.container_path(snapshot.id).write_bytes(b"garbage")

        with pytest.raises(CorruptContainerError):
            storage.restore(snapshot.id)
        assert container_names(storage) == [f"{snapshot.id}.zip"]
        assert (workspace / "a.txt").read_text() == "v1"

    def test_orphan_container_is_restorable(self, workspace, clock):
        write_tree(workspace, {"a.txt": "v1"})
        storage = make_storage(workspace, clock)
        snapshot = storage.create().record
        storage.index.remove(snapshot.id)
        write_tree(workspace, {"a.txt": "v2"})
        storage.restore(snapshot.id, create_backup=False)
        assert (workspace / "a.txt").read_text() == "v1"


class TestDelete:

    def test_delete_removes_container_and_record(self, workspace, clock):
        storage = make_storage(workspace, clock)
        record = storage.create().record
        assert storage.delete(record.id) is True
        assert storage.list() == []
        assert container_names(storage) == []

    def test_delete_is_idempotent(self, workspace, clock):
        storage = make_storage(workspace, clock)
        record = storage.create().record
        storage.delete(record.id)
        assert storage.delete(record.id) is False
        assert storage.delete("never-existed") is False
        assert storage.delete("../escape") is False

    def test_delete_after_container_removed_by_hand(self, workspace, clock):
        storage = make_storage(workspace, clock)
        record = storage.create().record
        storage.container_path(record.id).unlink()
        assert storage.delete(record.id) is True
        assert storage.list() == []

    def test_delete_keeps_other_snapshots(self, workspace, clock):
        storage = make_storage(workspace, clock)
        first = storage.create().record
        clock.advance()
        second = storage.create().record
        storage.delete(first.id)
        assert storage.list() == [second]


class TestConsistency:

    def test_corrupt_index_is_rebuilt_from_containers(self, workspace, clock):
        write_tree(workspace, {"a.txt": "a"})
        storage = make_storage(workspace, clock)
        first = storage.create(message="one").record
        clock.advance()
        second = storage.create().record

        storage.index.path.write_text("{broken")
        records = storage.list()

        assert records == [second, first]
        assert (storage.storage_path / "metadata.json.corrupt").read_text() == "{broken"
        # The rebuilt index is persisted
        assert storage.index.load() == [second, first]
        assert storage.index.last_load_warning is None

    def test_reconcile_drops_records_without_container(self, workspace, clock):
        storage = make_storage(workspace, clock)
        record = storage.create().record
        storage.container_path(record.id).unlink()
        result = storage.reconcile()
        assert result.removed == [record.id]
        assert storage.list() == []

    def test_reconcile_indexes_orphan_containers(self, workspace, clock):
        storage = make_storage(workspace, clock)
        record = storage.create(message="kept").record
        storage.index.remove(record.id)
        result = storage.reconcile()
        assert result.added == [record.id]
        assert storage.get(record.id) == record

    def test_reconcile_container_without_metadata(self, workspace, clock):
        storage = make_storage(workspace, clock)
        storage.ensure_storage_dir()
        with zipfile.ZipFile(storage.container_path("backup_123"), "w") as zf:
            zf.writestr("x.txt", "x")
        storage.reconcile()
        record = storage.get("backup_123")
        assert record.timestamp == 123
        assert record.kind == "backup"
        assert record.file_count == 1

    def test_reconcile_reports_unreadable_containers(self, workspace, clock):
        storage = make_storage(workspace, clock)
        storage.ensure_storage_dir()
        storage.container_path("snapshot_9").write_bytes(b"junk")
        result = storage.reconcile()
        assert result.unreadable == ["snapshot_9"]
        assert storage.list() == []

    def test_list_does_not_wait_for_the_lock(self, workspace, clock):
        write_tree(workspace, {"a.txt": "a"})
        storage = make_storage(workspace, clock, lock_timeout=0.1)
        record = storage.create().record
        held = threading.Event()
        release = threading.Event()

        def holder():
            with StorageLock(storage.storage_path):
                held.set()
                release.wait(5)

        worker = threading.Thread(target=holder)
        worker.start()
        held.wait(5)
        try:
            assert storage.list() == [record]
            assert storage.get(record.id) == record
        finally:
            release.set()
            worker.join()

    def test_concurrent_creates_lose_no_records(self, workspace):
        """Threads in one process share the per-root lock."""
        write_tree(workspace, {"a.txt": "a"})
        errors = []

        def worker():
            try:
                SnapshotStorage(workspace, lock_timeout=30).create()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        records = SnapshotStorage(workspace).list()
        assert len(records) == 6
        assert len({r.id for r in records}) == 6


class TestInspection:

    def test_compare(self, workspace, clock):
        write_tree(workspace, {"same.txt": "s", "edit.txt": "old", "gone.txt": "g"})
        storage = make_storage(workspace, clock)
        record = storage.create().record

        write_tree(workspace, {"edit.txt": "new", "added.txt": "a"})
        (workspace / "gone.txt").unlink()
        result = storage.compare(record.id)

        assert result.added == ["added.txt"]
        assert result.modified == ["edit.txt"]
        assert result.deleted == ["gone.txt"]
        assert result.unchanged == ["same.txt"]
        assert result.has_changes

    def test_compare_same_size_different_content(self, workspace, clock):
        write_tree(workspace, {"a.txt": "abc"})
        storage = make_storage(workspace, clock)
        record = storage.create().record
        write_tree(workspace, {"a.txt": "xyz"})
        assert storage.compare(record.id).modified == ["a.txt"]

    def test_compare_unknown(self, workspace, clock):
        with pytest.raises(NotFoundError):
            make_storage(workspace, clock).compare("snapshot_1")

    def test_stats(self, workspace, clock):
        write_tree(workspace, {"a.txt": "v1"})
        storage = make_storage(workspace, clock)
        first = storage.create().record
        clock.advance()
        storage.restore(first.id)

        stats = storage.stats()
        records = storage.list()
        assert stats.total_snapshots == 1
        assert stats.total_backups == 1
        assert stats.total_size == sum(r.size for r in records)
        assert stats.average_size == stats.total_size / 2
        assert stats.oldest == first
        assert stats.newest == records[0]

    def test_stats_empty(self, workspace, clock):
        stats = make_storage(workspace, clock).stats()
        assert stats.total_snapshots == 0
        assert stats.average_size == 0.0
        assert stats.newest is None

    def test_oversized(self, workspace, clock):
        write_tree(workspace, {"big.bin": bytes(range(256)) * 64})
        storage = make_storage(workspace, clock)
        record = storage.create().record
        assert storage.oversized(1) == [record]
        assert storage.oversized(record.size) == []
        assert storage.oversized(0) == []
