"""Safety backups taken before a restore overwrites a directory."""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable, List, Optional
import logging
import threading

from snapjournal.archive import CONTAINER_SUFFIX, write_container
from snapjournal.errors import BackupError, StorageError
from snapjournal.index import KIND_BACKUP, SnapshotRecord, encode_record_comment
from snapjournal.patterns import PatternFilter
from snapjournal.scanner import FileTreeScanner


logger = logging.getLogger(__name__)

BACKUP_PREFIX = "backup_"


@dataclass
class BackupCapture:
    """A written backup container and the record describing it."""
    path: Path
    record: SnapshotRecord
    warnings: List[str]


class BackupManager:
    """
    Captures the current state of a directory into a backup container.

    Backups use the default excludes only; user include/exclude rules of the
    snapshot being restored do not narrow what gets saved.
    """

    def __init__(
        self,
        storage_path: Path,
        default_excludes: Optional[Iterable[str]] = None,
        skip_dirs: Iterable[Path] = (),
    ):
        self.storage_path = Path(storage_path)
        self.default_excludes = default_excludes
        self.skip_dirs = list(skip_dirs) + [self.storage_path]

    def capture_backup(
        self,
        target_dir: Path,
        backup_id: str,
        timestamp: int,
        message: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BackupCapture:
        """
        Write a backup container for target_dir.

        Raises:
            BackupError: if the backup cannot be scanned or written. Nothing is
                left on disk in that case.
        """
        target_dir = Path(target_dir).resolve()
        container = self.storage_path / f"{backup_id}{CONTAINER_SUFFIX}"

        scanner = FileTreeScanner(
            PatternFilter(default_excludes=self.default_excludes),
            skip_dirs=self.skip_dirs,
            cancel_event=cancel_event,
        )
        try:
            if target_dir.exists():
                result = scanner.scan(target_dir)
                entries, warnings = result.entries, result.warnings
            else:
                # Nothing to lose yet; an empty backup still marks the restore
                entries, warnings = [], []

            provisional = SnapshotRecord(
                id=backup_id,
                timestamp=timestamp,
                file_count=len(entries),
                size=0,
                workspace_path=str(target_dir),
                message=message,
                kind=KIND_BACKUP,
            )
            size = write_container(
                container, entries, encode_record_comment(provisional), cancel_event
            )
        except (StorageError, OSError, ValueError) as e:
            raise BackupError(f"Backup of {target_dir} failed: {e}") from e

        record = replace(provisional, size=size)
        logger.info(f"Backup {backup_id} captured {len(entries)} file(s) from {target_dir}")
        return BackupCapture(path=container, record=record, warnings=warnings)
