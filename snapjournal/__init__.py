"""snapjournal - Point-in-time snapshots of a working directory."""

__version__ = "0.1.0"

from snapjournal.config import (
    Configuration,
    ConfigurationError,
    ValidationError,
    DEFAULT_EXCLUDES,
    load_config,
    parse_config,
    format_config,
    create_default_config,
)
from snapjournal.errors import (
    StorageError,
    SnapshotIOError,
    NotFoundError,
    ConflictError,
    CorruptContainerError,
    IndexCorruptionError,
    BackupError,
    OperationCancelled,
)
from snapjournal.lock import StorageLock, LockError
from snapjournal.logger import (
    ErrorCode,
    LoggingError,
    setup_logging,
    get_logger,
)
from snapjournal.patterns import PatternFilter, is_included
from snapjournal.archive import ArchiveEntry
from snapjournal.index import MetadataIndex, SnapshotRecord
from snapjournal.scanner import FileTreeScanner, ScanResult
from snapjournal.backup import BackupManager
from snapjournal.storage import (
    SnapshotStorage,
    CreateResult,
    RestoreResult,
    CompareResult,
    StorageStats,
    ReconcileResult,
)
from snapjournal.retention import (
    RetentionManager,
    RetentionResult,
)

__all__ = [
    "Configuration",
    "ConfigurationError",
    "ValidationError",
    "DEFAULT_EXCLUDES",
    "load_config",
    "parse_config",
    "format_config",
    "create_default_config",
    "StorageError",
    "SnapshotIOError",
    "NotFoundError",
    "ConflictError",
    "CorruptContainerError",
    "IndexCorruptionError",
    "BackupError",
    "OperationCancelled",
    "StorageLock",
    "LockError",
    "ErrorCode",
    "LoggingError",
    "setup_logging",
    "get_logger",
    "PatternFilter",
    "is_included",
    "ArchiveEntry",
    "MetadataIndex",
    "SnapshotRecord",
    "FileTreeScanner",
    "ScanResult",
    "BackupManager",
    "SnapshotStorage",
    "CreateResult",
    "RestoreResult",
    "CompareResult",
    "StorageStats",
    "ReconcileResult",
    "RetentionManager",
    "RetentionResult",
]
