"""Snapshot storage engine.

This module provides the SnapshotStorage class that ties the scanner, the
container codec and the metadata index together into create, list, get,
restore and delete operations on one storage directory.

On-disk layout under the storage directory (``.snapshots`` by default):

    <id>.zip        one container per snapshot or backup
    metadata.json   the index, newest first
    .lock           inter-process lock file
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterable, List, Optional
import logging
import re
import threading
import time
import zlib

from snapjournal import archive
from snapjournal.archive import CONTAINER_SUFFIX
from snapjournal.backup import BACKUP_PREFIX, BackupManager
from snapjournal.config import DEFAULT_EXCLUDES, DEFAULT_STORAGE_DIR, Configuration
from snapjournal.errors import (
    BackupError,
    CorruptContainerError,
    IndexCorruptionError,
    NotFoundError,
    SnapshotIOError,
    StorageError,
)
from snapjournal.index import (
    INDEX_FILENAME,
    KIND_BACKUP,
    KIND_SNAPSHOT,
    MetadataIndex,
    SnapshotRecord,
    decode_record_comment,
    encode_record_comment,
    sort_records,
)
from snapjournal.lock import StorageLock
from snapjournal.logger import (
    ErrorCode,
    log_operation_start,
    log_snapshot_created,
    log_structured_error,
)
from snapjournal.patterns import PatternFilter
from snapjournal.progress import ProgressInfo, ProgressReporter
from snapjournal.scanner import FileTreeScanner


logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "snapshot_"

# snapshot_<ms> or backup_<ms>, optionally followed by -NN
_ID_PATTERN = re.compile(r"^(snapshot|backup)_(\d+)(?:-(\d{2}))?$")
_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass
class CreateResult:
    """A new snapshot record and the files skipped while capturing it."""
    record: SnapshotRecord
    warnings: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class RestoreResult:
    """Outcome of a restore."""
    snapshot_id: str
    target: Path
    files_restored: int
    backup: Optional[SnapshotRecord] = None


@dataclass
class CompareResult:
    """File-level differences between a snapshot and a directory."""
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.modified or self.deleted)


@dataclass
class StorageStats:
    """Totals over the index."""
    total_snapshots: int
    total_backups: int
    total_size: int
    average_size: float
    oldest: Optional[SnapshotRecord]
    newest: Optional[SnapshotRecord]


@dataclass
class ReconcileResult:
    """What reconcile changed in the index."""
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unreadable: List[str] = field(default_factory=list)
    records: List[SnapshotRecord] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


def _now_ms() -> int:
    return int(time.time() * 1000)


class SnapshotStorage:
    """
    Stores snapshots of a workspace as containers plus an ordered index.

    The container file and the index record of a snapshot are created and
    removed together while the storage lock is held. Reads rely on the
    atomic index rewrite and take the lock only to repair a damaged index.
    """

    def __init__(
        self,
        workspace_root: Path,
        storage_dir: str = DEFAULT_STORAGE_DIR,
        default_excludes: Optional[Iterable[str]] = None,
        lock_timeout: float = 5.0,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Initialize the storage.

        Args:
            workspace_root: Directory captured and restored by default
            storage_dir: Storage directory, relative to workspace_root unless absolute
            default_excludes: Patterns excluded from every capture
                (defaults to DEFAULT_EXCLUDES)
            lock_timeout: Seconds to wait for the storage lock
            clock: Millisecond clock, injectable for tests
        """
        self.workspace_root = Path(workspace_root).resolve()
        storage = Path(storage_dir)
        if not storage.is_absolute():
            storage = self.workspace_root / storage
        self.storage_path = storage
        self.default_excludes = list(
            DEFAULT_EXCLUDES if default_excludes is None else default_excludes
        )
        self.index = MetadataIndex(self.storage_path / INDEX_FILENAME)
        self.lock = StorageLock(self.storage_path, timeout=lock_timeout)
        self._clock = clock or _now_ms

    @classmethod
    def from_config(cls, workspace_root: Path, config: Configuration) -> "SnapshotStorage":
        """Build a storage from a Configuration (user excludes extend the defaults)."""
        return cls(
            workspace_root,
            storage_dir=config.storage_dir,
            default_excludes=DEFAULT_EXCLUDES + list(config.exclude_patterns),
            lock_timeout=config.lock_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # helpers

    def ensure_storage_dir(self) -> None:
        """
        Create the storage directory if needed.

        Raises:
            SnapshotIOError: if it cannot be created
        """
        try:
            self.storage_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SnapshotIOError(
                f"Cannot create snapshot storage {self.storage_path}: {e}",
                ErrorCode.IO_STORAGE_UNAVAILABLE,
            )

    def container_path(self, snapshot_id: str) -> Path:
        """
        Path of the container for an id.

        Raises:
            NotFoundError: if the id cannot name a container (path characters)
        """
        if not _SAFE_ID.match(snapshot_id or "") or ".." in snapshot_id:
            raise NotFoundError(snapshot_id or "")
        return self.storage_path / f"{snapshot_id}{CONTAINER_SUFFIX}"

    def _next_timestamp(self, records: List[SnapshotRecord]) -> int:
        """Current time, bumped past the newest record so timestamps only grow."""
        now = self._clock()
        latest = max((r.timestamp for r in records), default=None)
        if latest is not None and now <= latest:
            return latest + 1
        return now

    def _unique_id(self, prefix: str, timestamp: int, records: List[SnapshotRecord]) -> str:
        taken = {r.id for r in records}
        base = f"{prefix}{timestamp}"
        if base not in taken and not self.container_path(base).exists():
            return base
        # Only orphaned containers can collide with a fresh timestamp
        for seq in range(1, 100):
            candidate = f"{base}-{seq:02d}"
            if candidate not in taken and not self.container_path(candidate).exists():
                logger.debug(f"Id collision detected, using sequence number: {candidate}")
                return candidate
        raise StorageError(f"No free snapshot id for timestamp {timestamp}")

    def _load_records(self) -> List[SnapshotRecord]:
        """Load the index; rebuild it from containers if it was damaged. Lock held."""
        records = self.index.load()
        if self.index.last_load_warning is not None:
            logger.warning(
                f"{self.index.last_load_warning.message}; reconciling with containers on disk"
            )
            records = self._reconcile_locked(records).records
        return records

    # ------------------------------------------------------------------
    # public operations

    def create(
        self,
        source_dir: Optional[Path] = None,
        message: Optional[str] = None,
        include_patterns: Optional[Iterable[str]] = None,
        exclude_patterns: Optional[Iterable[str]] = None,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[Callable[[ProgressInfo], None]] = None,
    ) -> CreateResult:
        """
        Capture source_dir (the workspace root by default) as a new snapshot.

        Process:
        1. Scan the tree through the default and user patterns
        2. Write the container to a temporary file and rename it into place
        3. Append the record, sized from the written container

        Unreadable files are skipped and reported in CreateResult.warnings.

        Raises:
            SnapshotIOError: source missing, storage or container not writable
            OperationCancelled: cancel_event was set; nothing is left on disk
            LockError: another operation holds the storage lock
        """
        start_time = time.time()
        source = Path(source_dir).resolve() if source_dir is not None else self.workspace_root
        if not source.is_dir():
            raise SnapshotIOError(
                f"Capture source is not a directory: {source}", ErrorCode.IO_READ_FAILED
            )
        self.ensure_storage_dir()
        log_operation_start(logger, "Snapshot", source)

        with self.lock:
            records = self._load_records()
            timestamp = self._next_timestamp(records)
            snapshot_id = self._unique_id(SNAPSHOT_PREFIX, timestamp, records)
            container = self.container_path(snapshot_id)

            scanner = FileTreeScanner(
                PatternFilter(
                    exclude_patterns=exclude_patterns,
                    include_patterns=include_patterns,
                    default_excludes=self.default_excludes,
                ),
                skip_dirs=[self.storage_path],
                cancel_event=cancel_event,
                progress_callback=progress_callback,
            )
            scan = scanner.scan(source)

            provisional = SnapshotRecord(
                id=snapshot_id,
                timestamp=timestamp,
                file_count=scan.file_count,
                size=0,
                workspace_path=str(source),
                message=message,
                kind=KIND_SNAPSHOT,
            )
            try:
                size = archive.write_container(
                    container,
                    scan.entries,
                    encode_record_comment(provisional),
                    cancel_event,
                    scanner.progress,
                )
            except SnapshotIOError as e:
                log_structured_error(
                    logger, str(e), ErrorCode.IO_WRITE_FAILED, {"snapshot": snapshot_id}
                )
                raise

            record = replace(provisional, size=size)
            try:
                self.index.append(record)
            except StorageError:
                # Keep container and index in lockstep
                container.unlink(missing_ok=True)
                raise

        duration = time.time() - start_time
        log_snapshot_created(
            logger, snapshot_id, record.file_count, size, duration, len(scan.warnings)
        )
        return CreateResult(record=record, warnings=scan.warnings, duration_seconds=duration)

    def list(self, include_backups: bool = True) -> List[SnapshotRecord]:
        """
        All records, newest first.

        A healthy index is read without the lock, so listing never waits on
        a running create or restore. Only a damaged index takes the lock to
        be reconciled.
        """
        if not self.storage_path.is_dir():
            return []
        try:
            records = self.index.load(strict=True)
        except IndexCorruptionError:
            with self.lock:
                records = self._load_records()
        if not include_backups:
            records = [r for r in records if not r.is_backup]
        return records

    def get(self, snapshot_id: str) -> Optional[SnapshotRecord]:
        """Look up one record; None when it does not exist."""
        for record in self.list():
            if record.id == snapshot_id:
                return record
        return None

    def load_container(self, snapshot_id: str) -> bytes:
        """
        Raw container bytes of a snapshot.

        Raises:
            NotFoundError: no container for the id
        """
        container = self.container_path(snapshot_id)
        try:
            return container.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(snapshot_id)
        except OSError as e:
            raise SnapshotIOError(f"Cannot read {container}: {e}", ErrorCode.IO_READ_FAILED)

    def restore(
        self,
        snapshot_id: str,
        target_dir: Optional[Path] = None,
        create_backup: bool = True,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[Callable[[ProgressInfo], None]] = None,
    ) -> RestoreResult:
        """
        Extract a snapshot over target_dir (the workspace root by default).

        START -> BACKUP (if create_backup) -> EXTRACT -> DONE. The container is
        found and checked before anything else happens; if the requested
        backup cannot be written the restore is aborted and target_dir is left
        untouched. Backups are indexed with kind "backup".

        Raises:
            NotFoundError: no container for snapshot_id (nothing is modified)
            CorruptContainerError: the container cannot be decoded
            BackupError: the safety backup failed (nothing is modified)
            ConflictError: an entry would land outside target_dir
        """
        target = Path(target_dir).resolve() if target_dir is not None else self.workspace_root
        container = self.container_path(snapshot_id)
        if not self.storage_path.is_dir():
            raise NotFoundError(snapshot_id)

        log_operation_start(logger, "Restore", target, snapshot_id)
        with self.lock:
            if not container.is_file():
                record = self.index.get(snapshot_id)
                code = ErrorCode.CONTAINER_MISSING if record else ErrorCode.SNAPSHOT_NOT_FOUND
                log_structured_error(
                    logger, f"Snapshot {snapshot_id} has no container", code,
                    {"snapshot": snapshot_id},
                )
                raise NotFoundError(snapshot_id, error_code=code)

            try:
                archive.verify(container)
            except CorruptContainerError as e:
                log_structured_error(
                    logger, str(e), ErrorCode.CONTAINER_CORRUPT, {"snapshot": snapshot_id}
                )
                raise

            backup_record = None
            if create_backup:
                backup_record = self._capture_backup(target, snapshot_id, cancel_event)

            progress = ProgressReporter(progress_callback) if progress_callback else None
            written = archive.unpack(
                container, target, overwrite=True,
                cancel_event=cancel_event, progress=progress,
            )

        logger.info(f"Restored {len(written)} file(s) from {snapshot_id} into {target}")
        return RestoreResult(
            snapshot_id=snapshot_id,
            target=target,
            files_restored=len(written),
            backup=backup_record,
        )

    def _capture_backup(
        self,
        target: Path,
        snapshot_id: str,
        cancel_event: Optional[threading.Event],
    ) -> SnapshotRecord:
        """Back up target and index the backup. Lock held."""
        records = self._load_records()
        timestamp = self._next_timestamp(records)
        backup_id = self._unique_id(BACKUP_PREFIX, timestamp, records)
        manager = BackupManager(self.storage_path, self.default_excludes)
        try:
            capture = manager.capture_backup(
                target,
                backup_id,
                timestamp,
                message=f"Automatic backup before restoring {snapshot_id}",
                cancel_event=cancel_event,
            )
        except BackupError as e:
            log_structured_error(
                logger, str(e), ErrorCode.BACKUP_FAILED, {"snapshot": snapshot_id}
            )
            raise

        try:
            self.index.append(capture.record)
        except StorageError as e:
            capture.path.unlink(missing_ok=True)
            raise BackupError(f"Backup {backup_id} could not be indexed: {e}") from e
        return capture.record

    def delete(self, snapshot_id: str) -> bool:
        """
        Remove a snapshot's container and record.

        Idempotent: an id that is already gone (or whose container was
        removed by hand) is not an error.

        Returns:
            True if a container or record was removed

        Raises:
            SnapshotIOError: the container or the index cannot be written
        """
        try:
            container = self.container_path(snapshot_id)
        except NotFoundError:
            return False
        if not self.storage_path.is_dir():
            return False

        with self.lock:
            removed_container = False
            try:
                container.unlink()
                removed_container = True
            except FileNotFoundError:
                logger.debug(f"Container for {snapshot_id} already absent")
            except OSError as e:
                raise SnapshotIOError(f"Cannot remove {container}: {e}")
            removed_record = self.index.remove(snapshot_id)

        if removed_container or removed_record:
            logger.info(f"Deleted snapshot {snapshot_id}")
        return removed_container or removed_record

    # ------------------------------------------------------------------
    # inspection and maintenance

    def compare(
        self,
        snapshot_id: str,
        target_dir: Optional[Path] = None,
        include_patterns: Optional[Iterable[str]] = None,
        exclude_patterns: Optional[Iterable[str]] = None,
    ) -> CompareResult:
        """
        Compare a snapshot with the current state of target_dir.

        Files are matched by relative path and compared by size and CRC-32.
        No content diff is produced.

        Raises:
            NotFoundError: no container for snapshot_id
            CorruptContainerError: the container cannot be decoded
        """
        target = Path(target_dir).resolve() if target_dir is not None else self.workspace_root
        members = archive.list_members(self.load_container(snapshot_id))

        current = {}
        if target.is_dir():
            scanner = FileTreeScanner(
                PatternFilter(
                    exclude_patterns=exclude_patterns,
                    include_patterns=include_patterns,
                    default_excludes=self.default_excludes,
                ),
                skip_dirs=[self.storage_path],
            )
            for entry in scanner.scan(target).entries:
                current[entry.path] = (entry.size, zlib.crc32(entry.data))

        result = CompareResult()
        for path in sorted(set(members) | set(current)):
            stored = members.get(path)
            now = current.get(path)
            if stored is None:
                result.added.append(path)
            elif now is None:
                result.deleted.append(path)
            elif (stored.size, stored.crc) == now:
                result.unchanged.append(path)
            else:
                result.modified.append(path)
        return result

    def stats(self) -> StorageStats:
        records = self.list()
        total_size = sum(r.size for r in records)
        return StorageStats(
            total_snapshots=sum(1 for r in records if not r.is_backup),
            total_backups=sum(1 for r in records if r.is_backup),
            total_size=total_size,
            average_size=(total_size / len(records)) if records else 0.0,
            oldest=records[-1] if records else None,
            newest=records[0] if records else None,
        )

    def oversized(self, max_bytes: int) -> List[SnapshotRecord]:
        """Records whose container is larger than max_bytes (0 or less disables)."""
        if max_bytes <= 0:
            return []
        return [r for r in self.list() if r.size > max_bytes]

    def reconcile(self) -> ReconcileResult:
        """
        Make the index agree with the containers on disk.

        Records without a container are dropped; containers without a record
        are indexed from their embedded metadata (or, failing that, from
        their file name and contents). Damaged containers are left alone and
        reported as unreadable.
        """
        if not self.storage_path.is_dir():
            return ReconcileResult()
        with self.lock:
            return self._reconcile_locked(self.index.load())

    def _reconcile_locked(self, records: List[SnapshotRecord]) -> ReconcileResult:
        result = ReconcileResult()
        containers = {
            p.name[: -len(CONTAINER_SUFFIX)]: p
            for p in self.storage_path.glob(f"*{CONTAINER_SUFFIX}")
            if p.is_file() and not p.name.startswith(".")
        }

        kept = []
        for record in records:
            if record.id in containers:
                kept.append(record)
            else:
                result.removed.append(record.id)

        known = {r.id for r in kept}
        for snapshot_id, path in sorted(containers.items()):
            if snapshot_id in known:
                continue
            try:
                recovered = self._record_from_container(snapshot_id, path)
            except (StorageError, OSError) as e:
                logger.warning(f"Cannot index container {path.name}: {e}")
                result.unreadable.append(snapshot_id)
                continue
            kept.append(recovered)
            result.added.append(snapshot_id)

        result.records = sort_records(kept)
        if result.changed or self.index.last_load_warning is not None:
            self.index.save(result.records)
            logger.info(
                f"Reconciled index: {len(result.added)} added, "
                f"{len(result.removed)} removed"
            )
        return result

    def _record_from_container(self, snapshot_id: str, path: Path) -> SnapshotRecord:
        size = path.stat().st_size
        record = decode_record_comment(archive.read_comment(path), size)
        if record is not None and record.id == snapshot_id:
            return record

        members = archive.list_members(path)
        match = _ID_PATTERN.match(snapshot_id)
        if match:
            timestamp = int(match.group(2))
            kind = KIND_BACKUP if match.group(1) == "backup" else KIND_SNAPSHOT
        else:
            timestamp = int(path.stat().st_mtime * 1000)
            kind = KIND_SNAPSHOT
        return SnapshotRecord(
            id=snapshot_id,
            timestamp=timestamp,
            file_count=len(members),
            size=size,
            workspace_path=str(self.workspace_root),
            message=None,
            kind=kind,
        )
