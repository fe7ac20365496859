"""Logging configuration for snapjournal.

This module provides logging setup and utility functions for the snapshot
engine. Supports DEBUG, INFO, WARNING and ERROR log levels with separate log
and error files. Includes automatic log rotation with gzip compression.
Provides structured logging with error codes for diagnostic purposes.
"""

import gzip
import json
import logging
import os
import shutil
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from snapjournal.config import LoggingConfig


# Logger name for the snapjournal package
LOGGER_NAME = "snapjournal"

# Default rotation settings
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_BACKUP_COUNT = 5

# Valid log levels
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


class ErrorCode(Enum):
    """
    Error codes for structured logging and troubleshooting.

    Each error code maps to a specific error category and has associated
    troubleshooting guidance.
    """
    # Scan and container I/O errors (1xxx)
    IO_READ_FAILED = "E1001"
    IO_WRITE_FAILED = "E1002"
    IO_STORAGE_UNAVAILABLE = "E1003"

    # Lookup errors (2xxx)
    SNAPSHOT_NOT_FOUND = "E2001"
    CONTAINER_MISSING = "E2002"

    # Extraction conflicts (3xxx)
    EXTRACT_CONFLICT = "E3001"
    EXTRACT_PATH_TRAVERSAL = "E3002"

    # Container and index integrity (4xxx)
    CONTAINER_CORRUPT = "E4001"
    INDEX_CORRUPT = "E4002"

    # Restore safety (5xxx)
    BACKUP_FAILED = "E5001"

    # Locking and cancellation (6xxx)
    LOCK_HELD = "E6001"
    OPERATION_CANCELLED = "E6002"

    # Configuration errors (7xxx)
    CONFIG_NOT_FOUND = "E7001"
    CONFIG_INVALID = "E7002"

    # General errors (0xxx)
    UNKNOWN_ERROR = "E0001"


# Troubleshooting guidance for each error code
ERROR_GUIDANCE: Dict[ErrorCode, str] = {
    ErrorCode.IO_READ_FAILED: "A file could not be read. Check its permissions or whether another program has it locked.",
    ErrorCode.IO_WRITE_FAILED: "A snapshot file could not be written. Check free disk space and permissions on the storage folder.",
    ErrorCode.IO_STORAGE_UNAVAILABLE: "The snapshot storage folder could not be created. Check that the workspace is writable.",

    ErrorCode.SNAPSHOT_NOT_FOUND: "The requested snapshot doesn't exist. List snapshots to see the available ids.",
    ErrorCode.CONTAINER_MISSING: "The snapshot is listed but its archive file is gone. Run reconcile to clean up the index.",

    ErrorCode.EXTRACT_CONFLICT: "A file already exists at the restore location. Restore with overwrite enabled or pick another folder.",
    ErrorCode.EXTRACT_PATH_TRAVERSAL: "The snapshot contains a path that points outside the restore folder and was refused.",

    ErrorCode.CONTAINER_CORRUPT: "The snapshot archive is damaged and cannot be read.",
    ErrorCode.INDEX_CORRUPT: "The snapshot index could not be read. Run reconcile to rebuild it from the archives on disk.",

    ErrorCode.BACKUP_FAILED: "The safety backup could not be created, so the restore was cancelled and nothing was changed.",

    ErrorCode.LOCK_HELD: "Another snapshot operation is running on this workspace. Wait for it to finish.",
    ErrorCode.OPERATION_CANCELLED: "The operation was cancelled. No partial snapshot was kept.",

    ErrorCode.CONFIG_NOT_FOUND: "No configuration file found. Run `snapjournal init` to create one.",
    ErrorCode.CONFIG_INVALID: "The configuration file is invalid. Check it for syntax or type errors.",

    ErrorCode.UNKNOWN_ERROR: "An unexpected error occurred. Check the logs for more details.",
}


@dataclass
class StructuredLogEntry:
    """
    A structured log entry that can be parsed back from a log file.

    Contains:
    - timestamp: ISO 8601 formatted timestamp
    - level: Severity level
    - error_code: Error code from ErrorCode enum (for errors/warnings)
    - message: Human-readable message
    - context: Additional context information
    - guidance: Troubleshooting guidance (for errors/warnings)
    """
    timestamp: str
    level: str
    message: str
    error_code: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    guidance: Optional[str] = None

    def to_json(self) -> str:
        """Serialize to JSON string for logging."""
        data = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(data, default=str)

    @classmethod
    def create(
        cls,
        level: str,
        message: str,
        error_code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> "StructuredLogEntry":
        """Create a structured log entry with automatic timestamp and guidance."""
        timestamp = datetime.now().isoformat()
        code_str = error_code.value if error_code else None
        guidance = ERROR_GUIDANCE.get(error_code) if error_code else None

        return cls(
            timestamp=timestamp,
            level=level,
            message=message,
            error_code=code_str,
            context=context,
            guidance=guidance,
        )


def get_error_guidance(error_code: ErrorCode) -> str:
    """
    Get troubleshooting guidance for an error code.

    Args:
        error_code: The error code to get guidance for

    Returns:
        Human-readable troubleshooting guidance
    """
    return ERROR_GUIDANCE.get(error_code, ERROR_GUIDANCE[ErrorCode.UNKNOWN_ERROR])


class LoggingError(Exception):
    """Raised when logging setup fails."""
    pass


class GzipRotatingFileHandler(RotatingFileHandler):
    """
    Rotating file handler that compresses rotated files with gzip.

    Rotated files are named with a .gz extension.
    """

    def rotation_filename(self, default_name: str) -> str:
        return default_name + ".gz"

    def rotate(self, source: str, dest: str) -> None:
        """
        Rotate and compress the log file.

        Compresses the source file using gzip and writes to dest.
        The source file is removed after successful compression.
        """
        if not os.path.exists(source):
            return

        try:
            with open(source, 'rb') as f_in:
                with gzip.open(dest, 'wb') as f_out:
                    shutil.copyfileobj(f_in, f_out)
            os.remove(source)
        except OSError:
            # If compression fails, fall back to simple rename
            if os.path.exists(source):
                fallback_dest = dest[:-3] if dest.endswith('.gz') else dest
                try:
                    os.rename(source, fallback_dest)
                except OSError:
                    pass  # Best effort - don't fail logging


def _ensure_log_directory(log_path: Path) -> None:
    """Ensure the parent directory for a log file exists."""
    log_dir = log_path.parent
    if not log_dir.exists():
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LoggingError(f"Failed to create log directory {log_dir}: {e}")


def _get_log_level(level_str: str) -> int:
    """Convert log level string to logging constant."""
    level_str = level_str.upper()
    if level_str not in VALID_LOG_LEVELS:
        raise LoggingError(
            f"Invalid log level '{level_str}'. Must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}"
        )
    return getattr(logging, level_str)


def setup_logging(
    config: Optional[LoggingConfig] = None,
    log_file: Optional[Path] = None,
    error_log_file: Optional[Path] = None,
    level: Optional[str] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None,
    console: bool = True,
) -> logging.Logger:
    """
    Configure logging for snapjournal.

    Sets up logging with:
    - A rotating file handler for general logs (log_file)
    - A rotating file handler for error logs only (error_log_file)
    - Console output for immediate feedback (unless console is False)
    - Automatic gzip compression of rotated files

    Args:
        config: LoggingConfig object with settings. If provided, the path and
            level args are ignored.
        log_file: Path to main log file (used if config is None)
        error_log_file: Path to error log file (used if config is None)
        level: Log level string (used if config is None)
        max_bytes: Maximum log file size before rotation (default 10MB)
        backup_count: Number of rotated files to keep (default 5)
        console: Whether to attach a stderr handler

    Returns:
        Configured logger instance

    Raises:
        LoggingError: If log directory cannot be created or level is invalid
    """
    if config is not None:
        log_file = config.log_file
        error_log_file = config.error_log_file
        level = config.level
        if max_bytes is None:
            max_bytes = config.log_max_bytes
        if backup_count is None:
            backup_count = config.log_backup_count
    else:
        if log_file is None:
            log_file = Path.home() / ".local/log/snapjournal.log"
        if error_log_file is None:
            error_log_file = Path.home() / ".local/log/snapjournal.err"
        if level is None:
            level = "INFO"
        if max_bytes is None:
            max_bytes = DEFAULT_MAX_BYTES
        if backup_count is None:
            backup_count = DEFAULT_BACKUP_COUNT

    # Expand ~ in paths
    log_file = Path(os.path.expanduser(str(log_file)))
    error_log_file = Path(os.path.expanduser(str(error_log_file)))

    _ensure_log_directory(log_file)
    _ensure_log_directory(error_log_file)

    log_level = _get_log_level(level)

    logger = logging.getLogger(LOGGER_NAME)

    # Clear any existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    logger.setLevel(logging.DEBUG)  # Allow all levels, handlers will filter

    detailed_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    file_handler = GzipRotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(detailed_formatter)
    logger.addHandler(file_handler)

    error_handler = GzipRotatingFileHandler(
        error_log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(detailed_formatter)
    logger.addHandler(error_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(detailed_formatter)
        logger.addHandler(console_handler)

    return logger


def get_logger() -> logging.Logger:
    """Get the snapjournal logger instance."""
    return logging.getLogger(LOGGER_NAME)


def format_size(size_bytes: int) -> str:
    """Format a byte count for humans (1024 based)."""
    if size_bytes >= 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024 * 1024):.2f} GB"
    elif size_bytes >= 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.2f} MB"
    elif size_bytes >= 1024:
        return f"{size_bytes / 1024:.2f} KB"
    return f"{size_bytes} bytes"


def log_operation_start(
    logger: logging.Logger,
    operation: str,
    path: Path,
    snapshot_id: Optional[str] = None,
) -> None:
    """Log the start of a create/restore/delete operation."""
    if snapshot_id:
        logger.info(f"{operation} started for {snapshot_id} ({path})")
    else:
        logger.info(f"{operation} started for {path}")


def log_snapshot_created(
    logger: logging.Logger,
    snapshot_id: str,
    file_count: int,
    size: int,
    duration_seconds: float,
    warnings: int = 0,
) -> None:
    """Log the completion of a capture."""
    logger.info(f"Snapshot {snapshot_id} created")
    logger.info(f"Files captured: {file_count}")
    logger.info(f"Container size: {format_size(size)}")
    logger.info(f"Duration: {duration_seconds:.2f} seconds")
    if warnings:
        logger.warning(f"{warnings} file(s) skipped during capture")


def log_operation_error(
    logger: logging.Logger,
    error: Exception,
    context: Optional[str] = None,
) -> None:
    """Log an operation error."""
    if context:
        logger.error(f"Operation failed during {context}: {error}")
    else:
        logger.error(f"Operation failed: {error}")


def log_structured(
    logger: logging.Logger,
    level: str,
    message: str,
    error_code: Optional[ErrorCode] = None,
    context: Optional[Dict[str, Any]] = None,
) -> StructuredLogEntry:
    """
    Log a structured entry as a JSON string.

    Returns:
        The StructuredLogEntry that was logged
    """
    entry = StructuredLogEntry.create(
        level=level,
        message=message,
        error_code=error_code,
        context=context,
    )

    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.log(log_level, entry.to_json())

    return entry


def log_structured_error(
    logger: logging.Logger,
    message: str,
    error_code: ErrorCode,
    context: Optional[Dict[str, Any]] = None,
) -> StructuredLogEntry:
    """Log a structured error entry with error code and guidance."""
    return log_structured(
        logger=logger,
        level="ERROR",
        message=message,
        error_code=error_code,
        context=context,
    )


def log_structured_warning(
    logger: logging.Logger,
    message: str,
    error_code: Optional[ErrorCode] = None,
    context: Optional[Dict[str, Any]] = None,
) -> StructuredLogEntry:
    """Log a structured warning entry."""
    return log_structured(
        logger=logger,
        level="WARNING",
        message=message,
        error_code=error_code,
        context=context,
    )


def map_exception_to_error_code(exception: Exception) -> ErrorCode:
    """
    Map an exception to an appropriate error code.

    Exceptions from snapjournal.errors carry their own code; anything else
    is classified by type.
    """
    code = getattr(exception, "error_code", None)
    if isinstance(code, ErrorCode):
        return code

    type_mappings = {
        "FileNotFoundError": ErrorCode.IO_READ_FAILED,
        "PermissionError": ErrorCode.IO_WRITE_FAILED,
        "IsADirectoryError": ErrorCode.IO_WRITE_FAILED,
        "BadZipFile": ErrorCode.CONTAINER_CORRUPT,
        "JSONDecodeError": ErrorCode.INDEX_CORRUPT,
        "ConfigurationError": ErrorCode.CONFIG_INVALID,
        "ValidationError": ErrorCode.CONFIG_INVALID,
    }

    return type_mappings.get(type(exception).__name__, ErrorCode.UNKNOWN_ERROR)
