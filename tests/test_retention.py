"""Tests for age-based auto-clean."""

import pytest

from conftest import FakeClock, write_tree
from snapjournal.retention import MS_PER_DAY, RetentionManager
from snapjournal.storage import SnapshotStorage


@pytest.fixture
def aged_storage(workspace):
    """Storage with snapshots 40, 20 and 0 days old (relative to clock.now)."""
    write_tree(workspace, {"a.txt": "a"})
    clock = FakeClock()
    storage = SnapshotStorage(workspace, clock=clock)
    records = []
    for age in (40, 20, 0):
        clock.now = 1_700_000_000_000 + (40 - age) * MS_PER_DAY
        records.append(storage.create(message=f"{age} days").record)
    return storage, clock, records


class TestRetentionManager:

    def test_expired_lists_old_snapshots(self, aged_storage):
        storage, clock, records = aged_storage
        expired = RetentionManager(storage, 30).expired(now=clock.now)
        assert expired == [records[0]]

    def test_apply_deletes_expired(self, aged_storage):
        storage, clock, records = aged_storage
        result = RetentionManager(storage, 10).apply(now=clock.now)

        assert result.deleted == [records[1], records[0]]
        assert result.kept == [records[2]]
        assert result.freed_bytes == records[0].size + records[1].size
        assert storage.list() == [records[2]]
        assert not storage.container_path(records[0].id).exists()

    def test_nothing_expired(self, aged_storage):
        storage, clock, records = aged_storage
        result = RetentionManager(storage, 100).apply(now=clock.now)
        assert result.deleted == []
        assert len(result.kept) == 3

    @pytest.mark.parametrize("days", [0, -1])
    def test_non_positive_age_disables(self, aged_storage, days):
        storage, clock, records = aged_storage
        manager = RetentionManager(storage, days)
        assert not manager.enabled
        assert manager.expired(now=clock.now) == []
        assert manager.apply(now=clock.now).deleted == []
        assert len(storage.list()) == 3

    def test_backups_can_be_spared(self, aged_storage):
        storage, clock, records = aged_storage
        backup = storage.restore(records[2].id).backup
        later = clock.now + 1000 * MS_PER_DAY
        manager = RetentionManager(storage, 10)

        assert backup in manager.expired(now=later)
        assert backup not in manager.expired(now=later, include_backups=False)

        result = manager.apply(now=later, include_backups=False)
        assert len(result.deleted) == 3
        assert storage.list() == [backup]

    def test_cutoff(self, workspace):
        manager = RetentionManager(SnapshotStorage(workspace), 2)
        assert manager.cutoff(now=10 * MS_PER_DAY) == 8 * MS_PER_DAY
