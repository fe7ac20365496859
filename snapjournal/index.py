"""Durable, ordered index of snapshot records.

The index is one JSON document holding every SnapshotRecord, newest first.
It is derived state: the containers on disk are the source of truth, so a
missing or damaged document loads as empty (with a warning) and can be
rebuilt by SnapshotStorage.reconcile().
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging
import os
import shutil
import tempfile

from snapjournal.errors import IndexCorruptionError, SnapshotIOError
from snapjournal.logger import ErrorCode, log_structured_warning


logger = logging.getLogger(__name__)

INDEX_FILENAME = "metadata.json"
CORRUPT_SUFFIX = ".corrupt"

KIND_SNAPSHOT = "snapshot"
KIND_BACKUP = "backup"
VALID_KINDS = {KIND_SNAPSHOT, KIND_BACKUP}


@dataclass(frozen=True)
class SnapshotRecord:
    """Descriptor of one stored snapshot or backup."""
    id: str
    timestamp: int  # milliseconds since the epoch
    file_count: int
    size: int
    workspace_path: str
    message: Optional[str] = None
    kind: str = KIND_SNAPSHOT

    @property
    def is_backup(self) -> bool:
        return self.kind == KIND_BACKUP

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to the on-disk JSON shape."""
        data: Dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
        }
        if self.message is not None:
            data["message"] = self.message
        data["fileCount"] = self.file_count
        data["size"] = self.size
        data["workspacePath"] = self.workspace_path
        data["kind"] = self.kind
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapshotRecord":
        """
        Parse the on-disk JSON shape.

        Raises:
            ValueError: if a field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise ValueError(f"record must be an object, got {type(data).__name__}")
        try:
            snapshot_id = data["id"]
            timestamp = data["timestamp"]
            file_count = data["fileCount"]
            size = data["size"]
            workspace_path = data["workspacePath"]
        except KeyError as e:
            raise ValueError(f"record is missing field {e}")
        message = data.get("message")
        kind = data.get("kind", KIND_SNAPSHOT)

        if not isinstance(snapshot_id, str) or not snapshot_id:
            raise ValueError("id must be a non-empty string")
        for name, value in (("timestamp", timestamp), ("fileCount", file_count), ("size", size)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer")
        if not isinstance(workspace_path, str):
            raise ValueError("workspacePath must be a string")
        if message is not None and not isinstance(message, str):
            raise ValueError("message must be a string")
        if kind not in VALID_KINDS:
            raise ValueError(f"unknown kind {kind!r}")

        return cls(
            id=snapshot_id,
            timestamp=timestamp,
            file_count=file_count,
            size=size,
            workspace_path=workspace_path,
            message=message,
            kind=kind,
        )


def sort_records(records: List[SnapshotRecord]) -> List[SnapshotRecord]:
    """Newest first; ties broken by id so the order is total."""
    return sorted(records, key=lambda r: (r.timestamp, r.id), reverse=True)


@dataclass
class LoadWarning:
    """Why the last load returned less than the document held."""
    message: str
    preserved_copy: Optional[Path] = None
    dropped_records: List[str] = field(default_factory=list)


class MetadataIndex:
    """
    One JSON document of SnapshotRecords, kept sorted newest first.

    Every mutation rewrites the whole document through a temporary file and
    an atomic rename, so readers see either the old or the new index.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.last_load_warning: Optional[LoadWarning] = None

    @property
    def corrupt_copy_path(self) -> Path:
        return self.path.with_name(self.path.name + CORRUPT_SUFFIX)

    def _preserve_corrupt(self) -> Optional[Path]:
        """Keep the unreadable document aside before it can be overwritten."""
        try:
            shutil.copy2(self.path, self.corrupt_copy_path)
            return self.corrupt_copy_path
        except OSError as e:
            logger.error(f"Could not preserve corrupt index {self.path}: {e}")
            return None

    def _corrupt(self, reason: str, strict: bool) -> List[SnapshotRecord]:
        message = f"Snapshot index {self.path} is unreadable: {reason}"
        if strict:
            raise IndexCorruptionError(message)
        preserved = self._preserve_corrupt()
        self.last_load_warning = LoadWarning(message, preserved_copy=preserved)
        log_structured_warning(
            logger,
            message,
            ErrorCode.INDEX_CORRUPT,
            {"index": str(self.path), "preserved": str(preserved) if preserved else None},
        )
        return []

    def load(self, strict: bool = False) -> List[SnapshotRecord]:
        """
        Read all records, newest first.

        A missing document is an empty index. An unparsable one is reported
        through last_load_warning (or IndexCorruptionError when strict) and
        loads as empty. A strict load has no side effects, so it is safe
        without the storage lock.
        """
        if not strict:
            self.last_load_warning = None
        if not self.path.exists():
            return []

        try:
            raw = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return self._corrupt(str(e), strict)

        if not raw.strip():
            return self._corrupt("document is empty", strict)

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            return self._corrupt(str(e), strict)

        if not isinstance(data, list):
            return self._corrupt("top level is not an array", strict)

        records = []
        dropped = []
        seen = set()
        for i, item in enumerate(data):
            try:
                record = SnapshotRecord.from_dict(item)
            except ValueError as e:
                dropped.append(f"#{i}: {e}")
                continue
            if record.id in seen:
                dropped.append(f"#{i}: duplicate id {record.id}")
                continue
            seen.add(record.id)
            records.append(record)

        if dropped:
            if strict:
                raise IndexCorruptionError(
                    f"Snapshot index {self.path} has invalid records: {'; '.join(dropped)}"
                )
            message = f"Dropped {len(dropped)} invalid record(s) from {self.path}"
            self.last_load_warning = LoadWarning(
                message,
                preserved_copy=self._preserve_corrupt(),
                dropped_records=dropped,
            )
            log_structured_warning(
                logger, message, ErrorCode.INDEX_CORRUPT, {"dropped": dropped}
            )

        return sort_records(records)

    def save(self, records: List[SnapshotRecord]) -> None:
        """
        Persist the full index atomically.

        Raises:
            SnapshotIOError: if the document cannot be written
        """
        payload = json.dumps(
            [r.to_dict() for r in sort_records(records)], indent=2
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
            )
        except OSError as e:
            raise SnapshotIOError(f"Cannot write snapshot index {self.path}: {e}")

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise SnapshotIOError(f"Cannot write snapshot index {self.path}: {e}")

    def get(self, snapshot_id: str) -> Optional[SnapshotRecord]:
        for record in self.load():
            if record.id == snapshot_id:
                return record
        return None

    def append(self, record: SnapshotRecord) -> None:
        """Insert a record (replacing one with the same id) and persist."""
        records = [r for r in self.load() if r.id != record.id]
        records.append(record)
        self.save(records)

    def remove(self, snapshot_id: str) -> bool:
        """Remove a record if present. Returns whether one was found."""
        records = self.load()
        remaining = [r for r in records if r.id != snapshot_id]
        if len(remaining) == len(records):
            return False
        self.save(remaining)
        return True

    def replace_all(self, records: List[SnapshotRecord]) -> None:
        self.save(records)


def encode_record_comment(record: SnapshotRecord) -> bytes:
    """
    Metadata embedded in a container so the index can be rebuilt from it.

    The size is left out; it is read from the container file itself. An
    over-long message is dropped to fit the ZIP comment limit.
    """
    data = record.to_dict()
    data.pop("size", None)
    encoded = json.dumps(data).encode("utf-8")
    if len(encoded) > 65535:
        data.pop("message", None)
        encoded = json.dumps(data).encode("utf-8")
    return encoded


def decode_record_comment(comment: bytes, size: int) -> Optional[SnapshotRecord]:
    """Parse metadata written by encode_record_comment, or None if absent/invalid."""
    if not comment:
        return None
    try:
        data = json.loads(comment.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    data["size"] = size
    try:
        return SnapshotRecord.from_dict(data)
    except ValueError:
        return None
