"""Configuration management for snapjournal.

This module provides dataclasses for configuration and functions for
parsing/formatting TOML configuration files.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import tomllib


class ConfigurationError(Exception):
    """Raised when configuration file is missing or malformed."""
    pass


class ValidationError(Exception):
    """Raised when configuration values have invalid types."""
    pass


# Patterns excluded from every capture, whatever the caller asks for:
# version control metadata, build output, editor settings and logs.
DEFAULT_EXCLUDES: List[str] = [
    ".git",
    ".svn",
    ".hg",
    "node_modules",
    "out",
    "dist",
    "build",
    ".vscode",
    ".idea",
    "*.log",
]

DEFAULT_STORAGE_DIR = ".snapshots"


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"  # "DEBUG", "INFO", "WARNING", "ERROR"
    log_file: Path = field(
        default_factory=lambda: Path.home() / ".local/log/snapjournal.log"
    )
    error_log_file: Path = field(
        default_factory=lambda: Path.home() / ".local/log/snapjournal.err"
    )
    log_max_size_mb: int = 10  # Maximum log file size in MB before rotation
    log_backup_count: int = 5  # Number of rotated log files to keep

    @property
    def log_max_bytes(self) -> int:
        """Return max size in bytes for use with RotatingFileHandler."""
        return self.log_max_size_mb * 1024 * 1024


@dataclass
class Configuration:
    """Main configuration for snapjournal."""
    storage_dir: str = DEFAULT_STORAGE_DIR
    max_snapshot_size_mb: int = 100  # informational only, never enforced
    auto_clean_days: int = 30
    include_patterns: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)
    lock_timeout_seconds: float = 5.0
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def max_snapshot_size_bytes(self) -> int:
        return self.max_snapshot_size_mb * 1024 * 1024


# Default config file locations, workspace file wins over the user file
DEFAULT_CONFIG_PATH = Path.home() / ".config/snapjournal/config.toml"
WORKSPACE_CONFIG_NAME = ".snapjournal.toml"


def _validate_type(value: Any, expected_type: type, key: str) -> None:
    """Validate that a value has the expected type."""
    # bool is a subclass of int, reject it where a number is expected
    if expected_type in (int, float) and isinstance(value, bool):
        raise ValidationError(
            f"Key '{key}' has invalid type: expected {expected_type.__name__}, "
            f"got bool"
        )
    if not isinstance(value, expected_type):
        raise ValidationError(
            f"Key '{key}' has invalid type: expected {expected_type.__name__}, "
            f"got {type(value).__name__}"
        )


def _validate_pattern_list(value: Any, key: str) -> List[str]:
    _validate_type(value, list, key)
    for i, pattern in enumerate(value):
        _validate_type(pattern, str, f"{key}[{i}]")
    return list(value)


def _parse_logging_config(data: Dict[str, Any]) -> LoggingConfig:
    """Parse logging configuration from dict."""
    logging_data = data.get("logging", {})

    level = logging_data.get("level", "INFO")
    _validate_type(level, str, "logging.level")

    log_file = logging_data.get(
        "log_file",
        str(Path.home() / ".local/log/snapjournal.log")
    )
    _validate_type(log_file, str, "logging.log_file")

    error_log_file = logging_data.get(
        "error_log_file",
        str(Path.home() / ".local/log/snapjournal.err")
    )
    _validate_type(error_log_file, str, "logging.error_log_file")

    log_max_size_mb = logging_data.get("log_max_size_mb", 10)
    _validate_type(log_max_size_mb, int, "logging.log_max_size_mb")

    log_backup_count = logging_data.get("log_backup_count", 5)
    _validate_type(log_backup_count, int, "logging.log_backup_count")

    return LoggingConfig(
        level=level,
        log_file=Path(log_file),
        error_log_file=Path(error_log_file),
        log_max_size_mb=log_max_size_mb,
        log_backup_count=log_backup_count,
    )


def parse_config_string(toml_content: str) -> Configuration:
    """
    Parse TOML string into Configuration object.

    Every key is optional; missing keys take their defaults.

    Args:
        toml_content: TOML formatted string

    Returns:
        Configuration object

    Raises:
        ConfigurationError: If the TOML cannot be parsed or a value is out of range
        ValidationError: If value has wrong type
    """
    try:
        data = tomllib.loads(toml_content)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML format: {e}")

    # Get main section (may be nested under [main] or at root)
    main_data = data.get("main", data)

    storage_dir = main_data.get("storage_dir", DEFAULT_STORAGE_DIR)
    _validate_type(storage_dir, str, "storage_dir")
    if not storage_dir.strip():
        raise ConfigurationError("storage_dir must not be empty")

    max_size = main_data.get("max_snapshot_size_mb", 100)
    _validate_type(max_size, int, "max_snapshot_size_mb")

    auto_clean_days = main_data.get("auto_clean_days", 30)
    _validate_type(auto_clean_days, int, "auto_clean_days")

    include_patterns = _validate_pattern_list(
        main_data.get("include_patterns", []), "include_patterns"
    )
    exclude_patterns = _validate_pattern_list(
        main_data.get("exclude_patterns", []), "exclude_patterns"
    )

    lock_timeout = main_data.get("lock_timeout_seconds", 5.0)
    # Allow both int and float for the timeout
    if isinstance(lock_timeout, bool) or not isinstance(lock_timeout, (int, float)):
        raise ValidationError(
            f"Key 'lock_timeout_seconds' has invalid type: expected int or float, "
            f"got {type(lock_timeout).__name__}"
        )
    if lock_timeout < 0:
        raise ConfigurationError("lock_timeout_seconds must not be negative")

    return Configuration(
        storage_dir=storage_dir,
        max_snapshot_size_mb=max_size,
        auto_clean_days=auto_clean_days,
        include_patterns=include_patterns,
        exclude_patterns=exclude_patterns,
        lock_timeout_seconds=float(lock_timeout),
        logging=_parse_logging_config(data),
    )


def find_config(workspace_root: Optional[Path] = None) -> Optional[Path]:
    """Return the config file that applies to a workspace, if any."""
    if workspace_root is not None:
        candidate = Path(workspace_root) / WORKSPACE_CONFIG_NAME
        if candidate.is_file():
            return candidate
    if DEFAULT_CONFIG_PATH.is_file():
        return DEFAULT_CONFIG_PATH
    return None


def parse_config(config_path: Optional[Path] = None) -> Configuration:
    """
    Parse TOML configuration file into Configuration object.

    Args:
        config_path: Path to config file. Defaults to ~/.config/snapjournal/config.toml

    Returns:
        Configuration object

    Raises:
        ConfigurationError: If file doesn't exist or cannot be parsed
        ValidationError: If value has wrong type
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}"
        )

    try:
        content = config_path.read_text()
    except PermissionError:
        raise ConfigurationError(
            f"Permission denied reading configuration file: {config_path}"
        )
    except OSError as e:
        raise ConfigurationError(
            f"Error reading configuration file {config_path}: {e}"
        )

    return parse_config_string(content)


def load_config(
    config_path: Optional[Path] = None,
    workspace_root: Optional[Path] = None,
) -> Configuration:
    """
    Load the effective configuration.

    An explicit path must exist. Without one, the workspace file and then the
    user file are tried; if neither exists the defaults are returned.
    """
    if config_path is not None:
        return parse_config(config_path)
    found = find_config(workspace_root)
    if found is None:
        return Configuration()
    return parse_config(found)


def _escape_toml_string(s: str) -> str:
    """Escape a string for TOML basic string format."""
    # Must escape backslashes first, then quotes
    return s.replace("\\", "\\\\").replace('"', '\\"')


def _format_string_list(name: str, values: List[str]) -> List[str]:
    if not values:
        return [f"{name} = []"]
    lines = [f"{name} = ["]
    for value in values:
        lines.append(f'    "{_escape_toml_string(value)}",')
    lines.append("]")
    return lines


def format_config(config: Configuration) -> str:
    """
    Format Configuration object back to TOML string.

    Used for round-trip testing and config generation.

    Args:
        config: Configuration object to format

    Returns:
        TOML formatted string
    """
    lines = []

    lines.append("[main]")
    lines.append(f'storage_dir = "{_escape_toml_string(config.storage_dir)}"')
    lines.append(f"max_snapshot_size_mb = {config.max_snapshot_size_mb}")
    lines.append(f"auto_clean_days = {config.auto_clean_days}")
    lines.extend(_format_string_list("include_patterns", config.include_patterns))
    lines.extend(_format_string_list("exclude_patterns", config.exclude_patterns))
    lines.append(f"lock_timeout_seconds = {float(config.lock_timeout_seconds)}")
    lines.append("")

    lines.append("[logging]")
    lines.append(f'level = "{_escape_toml_string(config.logging.level)}"')
    lines.append(f'log_file = "{_escape_toml_string(str(config.logging.log_file))}"')
    lines.append(f'error_log_file = "{_escape_toml_string(str(config.logging.error_log_file))}"')
    lines.append(f"log_max_size_mb = {config.logging.log_max_size_mb}")
    lines.append(f"log_backup_count = {config.logging.log_backup_count}")

    return "\n".join(lines)


def create_default_config() -> str:
    """
    Generate default configuration TOML for `snapjournal init`.

    Returns:
        TOML formatted string with default configuration
    """
    template = '''# snapjournal configuration file

[main]
# Snapshot storage directory, relative to the workspace root
storage_dir = ".snapshots"

# Warn when a snapshot container grows beyond this size (MB)
max_snapshot_size_mb = 100

# Snapshots older than this many days are removed by `snapjournal clean`
auto_clean_days = 30

# When non-empty, only files matching one of these patterns are captured
include_patterns = []

# Extra patterns to exclude. These are always excluded as well:
'''

    for pattern in DEFAULT_EXCLUDES:
        template += f'#   {pattern}\n'

    template += '''exclude_patterns = []

# Seconds to wait for another snapjournal process holding the storage lock
lock_timeout_seconds = 5.0

[logging]
# Log level: DEBUG, INFO, WARNING, ERROR
level = "INFO"
log_file = "~/.local/log/snapjournal.log"
error_log_file = "~/.local/log/snapjournal.err"
# Log rotation settings
log_max_size_mb = 10
log_backup_count = 5
'''

    return template
