"""Error taxonomy for the snapshot storage engine.

Every public operation either returns a value or raises one of these.
Nothing here is fatal to the host process.
"""

from typing import Optional

from snapjournal.logger import ErrorCode


class StorageError(Exception):
    """Base class for snapshot storage failures."""

    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None):
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code


class SnapshotIOError(StorageError):
    """Read/write failure on a specific file or container."""

    error_code = ErrorCode.IO_WRITE_FAILED


class NotFoundError(StorageError):
    """Referenced snapshot has no index entry or no container."""

    error_code = ErrorCode.SNAPSHOT_NOT_FOUND

    def __init__(self, snapshot_id: str, message: Optional[str] = None,
                 error_code: Optional[ErrorCode] = None):
        super().__init__(message or f"Snapshot not found: {snapshot_id}", error_code)
        self.snapshot_id = snapshot_id


class ConflictError(StorageError):
    """Extraction would overwrite a file or escape the target directory."""

    error_code = ErrorCode.EXTRACT_CONFLICT

    def __init__(self, path: str, message: str,
                 error_code: Optional[ErrorCode] = None):
        super().__init__(message, error_code)
        self.path = path


class CorruptContainerError(StorageError):
    """Container bytes cannot be decoded."""

    error_code = ErrorCode.CONTAINER_CORRUPT


class IndexCorruptionError(StorageError):
    """Index document is unreadable or unparsable."""

    error_code = ErrorCode.INDEX_CORRUPT


class BackupError(StorageError):
    """Backup capture failed; the restore that asked for it was aborted."""

    error_code = ErrorCode.BACKUP_FAILED


class OperationCancelled(StorageError):
    """A scan or pack was cancelled through its cancel event."""

    error_code = ErrorCode.OPERATION_CANCELLED
