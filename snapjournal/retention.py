"""Retention manager for snapjournal.

This module provides the RetentionManager class that removes snapshots
older than a configured number of days (auto-clean).
"""

from dataclasses import dataclass, field
from typing import List, Optional
import logging
import time

from snapjournal.errors import StorageError
from snapjournal.index import SnapshotRecord
from snapjournal.storage import SnapshotStorage


logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000


@dataclass
class RetentionResult:
    """Result of applying retention policy."""
    deleted: List[SnapshotRecord] = field(default_factory=list)
    kept: List[SnapshotRecord] = field(default_factory=list)
    freed_bytes: int = 0


class RetentionManager:
    """
    Deletes snapshots older than max_age_days.

    A max_age_days of zero or less disables auto-clean entirely.
    """

    def __init__(self, storage: SnapshotStorage, max_age_days: int):
        """
        Initialize the retention manager.

        Args:
            storage: Storage whose snapshots are cleaned
            max_age_days: Age in days after which a snapshot is removed
        """
        self.storage = storage
        self.max_age_days = max_age_days

    @property
    def enabled(self) -> bool:
        return self.max_age_days > 0

    def cutoff(self, now: Optional[int] = None) -> int:
        """Epoch milliseconds before which snapshots are expired."""
        if now is None:
            now = int(time.time() * 1000)
        return now - self.max_age_days * MS_PER_DAY

    def expired(
        self,
        now: Optional[int] = None,
        include_backups: bool = True,
    ) -> List[SnapshotRecord]:
        """
        List records older than the cutoff, newest first.

        Args:
            now: Reference time in epoch milliseconds (defaults to the clock)
            include_backups: Whether restore backups are considered as well
        """
        if not self.enabled:
            return []
        cutoff = self.cutoff(now)
        return [
            r for r in self.storage.list(include_backups=include_backups)
            if r.timestamp < cutoff
        ]

    def apply(
        self,
        now: Optional[int] = None,
        include_backups: bool = True,
    ) -> RetentionResult:
        """
        Delete every expired snapshot.

        A snapshot that fails to delete is kept and logged; the remaining
        ones are still processed.

        Returns:
            RetentionResult with deleted and kept records
        """
        records = self.storage.list(include_backups=include_backups)
        if not self.enabled:
            return RetentionResult(kept=records)

        cutoff = self.cutoff(now)
        result = RetentionResult()
        for record in records:
            if record.timestamp >= cutoff:
                result.kept.append(record)
                continue
            try:
                self.storage.delete(record.id)
            except StorageError as e:
                logger.error(f"Failed to delete expired snapshot {record.id}: {e}")
                result.kept.append(record)
                continue
            result.deleted.append(record)
            result.freed_bytes += record.size

        if result.deleted:
            logger.info(
                f"Auto-clean removed {len(result.deleted)} snapshot(s) older than "
                f"{self.max_age_days} day(s)"
            )
        return result
