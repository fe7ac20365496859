"""Command-line interface for snapjournal.

This module provides the CLI for snapjournal, supporting commands for:
- create: Capture the workspace as a new snapshot
- list: List snapshots and restore backups
- show: Show one snapshot
- restore: Restore a snapshot over the workspace
- delete: Delete a snapshot
- compare: Compare a snapshot with the workspace
- clean: Delete snapshots older than N days
- stats: Show storage totals
- reconcile: Rebuild the index from containers on disk
- export-changelog: Write a markdown changelog of snapshots
- init: Create default config
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from snapjournal import __version__
from snapjournal.config import (
    Configuration,
    ConfigurationError,
    ValidationError,
    create_default_config,
    load_config,
    DEFAULT_CONFIG_PATH,
)
from snapjournal.errors import (
    ConflictError,
    CorruptContainerError,
    IndexCorruptionError,
    NotFoundError,
    StorageError,
)
from snapjournal.index import SnapshotRecord
from snapjournal.lock import LockError
from snapjournal.logger import (
    LoggingError,
    format_size,
    get_error_guidance,
    log_operation_error,
    map_exception_to_error_code,
    setup_logging,
)
from snapjournal.retention import RetentionManager
from snapjournal.storage import SnapshotStorage


logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_LOCK_ERROR = 2
EXIT_NOT_FOUND = 3
EXIT_STORAGE_ERROR = 4
EXIT_CONFLICT_ERROR = 5
EXIT_GENERAL_ERROR = 1


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog='snapjournal',
        description='Point-in-time snapshots of a working directory'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to config file (default: <workspace>/.snapjournal.toml, '
             'then ~/.config/snapjournal/config.toml)',
        metavar='PATH'
    )
    parser.add_argument(
        '--workspace', '-w',
        type=Path,
        default=None,
        help='Workspace root (default: current directory)',
        metavar='DIR'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose output'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    create_parser_ = subparsers.add_parser(
        'create',
        help='Create a snapshot of the workspace'
    )
    create_parser_.add_argument(
        '--message', '-m',
        help='Message stored with the snapshot'
    )

    list_parser = subparsers.add_parser(
        'list',
        help='List snapshots'
    )
    list_parser.add_argument(
        '--json',
        action='store_true',
        help='Output as JSON'
    )
    list_parser.add_argument(
        '--no-backups',
        action='store_true',
        help='Hide automatic restore backups'
    )

    show_parser = subparsers.add_parser(
        'show',
        help='Show one snapshot'
    )
    show_parser.add_argument('snapshot', help='Snapshot id')

    restore_parser = subparsers.add_parser(
        'restore',
        help='Restore a snapshot'
    )
    restore_parser.add_argument('snapshot', help='Snapshot id')
    restore_parser.add_argument(
        '--to',
        dest='destination',
        type=Path,
        help='Destination directory (default: the workspace)'
    )
    restore_parser.add_argument(
        '--no-backup',
        action='store_true',
        help='Do not back up the destination before restoring'
    )

    delete_parser = subparsers.add_parser(
        'delete',
        help='Delete a snapshot'
    )
    delete_parser.add_argument('snapshot', help='Snapshot id')

    compare_parser = subparsers.add_parser(
        'compare',
        help='Compare a snapshot with the workspace'
    )
    compare_parser.add_argument('snapshot', help='Snapshot id')
    compare_parser.add_argument(
        '--json',
        action='store_true',
        help='Output as JSON'
    )

    clean_parser = subparsers.add_parser(
        'clean',
        help='Delete snapshots older than the auto-clean age'
    )
    clean_parser.add_argument(
        '--days',
        type=int,
        help='Age in days (default: auto_clean_days from config)'
    )
    clean_parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Only show what would be deleted'
    )

    subparsers.add_parser(
        'stats',
        help='Show storage statistics'
    )

    subparsers.add_parser(
        'reconcile',
        help='Repair the index from the containers on disk'
    )

    changelog_parser = subparsers.add_parser(
        'export-changelog',
        help='Export a markdown changelog of snapshots'
    )
    changelog_parser.add_argument(
        '--output', '-o',
        type=Path,
        help='Output file (default: stdout)'
    )

    init_parser = subparsers.add_parser(
        'init',
        help='Create default config'
    )
    init_parser.add_argument(
        '--force', '-f',
        action='store_true',
        help='Overwrite existing config file'
    )

    return parser


def _workspace(args: argparse.Namespace) -> Path:
    return (args.workspace or Path.cwd()).resolve()


def _load_config(args: argparse.Namespace) -> Optional[Configuration]:
    """
    Load configuration for the workspace.

    Returns None and prints error on failure.
    """
    try:
        config = load_config(args.config, _workspace(args))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return None
    except ValidationError as e:
        print(f"Validation error: {e}", file=sys.stderr)
        return None

    try:
        setup_logging(config.logging, console=args.verbose)
    except LoggingError as e:
        print(f"Warning: logging disabled: {e}", file=sys.stderr)
    return config


def _open_storage(args: argparse.Namespace, config: Configuration) -> SnapshotStorage:
    return SnapshotStorage.from_config(_workspace(args), config)


def _format_timestamp(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime('%Y-%m-%d %H:%M:%S')


def _record_to_json(record: SnapshotRecord) -> dict:
    data = record.to_dict()
    data["date"] = datetime.fromtimestamp(record.timestamp / 1000).isoformat()
    return data


def cmd_create(args: argparse.Namespace, config: Configuration) -> int:
    """Execute the 'create' command - capture the workspace."""
    storage = _open_storage(args, config)
    result = storage.create(
        message=args.message,
        include_patterns=config.include_patterns or None,
    )
    record = result.record

    print(f"Created snapshot {record.id}")
    print(f"  Files: {record.file_count}")
    print(f"  Size: {format_size(record.size)}")
    for warning in result.warnings:
        print(f"  Warning: {warning}", file=sys.stderr)
    if 0 < config.max_snapshot_size_bytes < record.size:
        print(
            f"  Warning: snapshot is larger than {config.max_snapshot_size_mb} MB",
            file=sys.stderr,
        )
    return EXIT_SUCCESS


def cmd_list(args: argparse.Namespace, config: Configuration) -> int:
    """Execute the 'list' command - list snapshots."""
    storage = _open_storage(args, config)
    records = storage.list(include_backups=not args.no_backups)

    if args.json:
        print(json.dumps([_record_to_json(r) for r in records], indent=2))
        return EXIT_SUCCESS

    if not records:
        print("No snapshots found.")
        return EXIT_SUCCESS

    print(f"{'Id':<28} {'Date':<20} {'Size':>12} {'Files':>8}  Message")
    print("-" * 80)
    for record in records:
        label = record.message or ""
        if record.is_backup:
            label = f"[backup] {label}".rstrip()
        print(
            f"{record.id:<28} {_format_timestamp(record.timestamp):<20} "
            f"{format_size(record.size):>12} {record.file_count:>8}  {label}"
        )
    print("-" * 80)
    print(f"Total: {len(records)} snapshot(s)")
    return EXIT_SUCCESS


def cmd_show(args: argparse.Namespace, config: Configuration) -> int:
    """Execute the 'show' command - show one snapshot."""
    storage = _open_storage(args, config)
    record = storage.get(args.snapshot)
    if record is None:
        print(f"Snapshot not found: {args.snapshot}", file=sys.stderr)
        return EXIT_NOT_FOUND

    print(f"Snapshot: {record.id}")
    print(f"  Kind: {record.kind}")
    print(f"  Date: {_format_timestamp(record.timestamp)}")
    print(f"  Files: {record.file_count}")
    print(f"  Size: {format_size(record.size)}")
    print(f"  Workspace: {record.workspace_path}")
    if record.message:
        print(f"  Message: {record.message}")
    return EXIT_SUCCESS


def cmd_restore(args: argparse.Namespace, config: Configuration) -> int:
    """Execute the 'restore' command - restore a snapshot."""
    storage = _open_storage(args, config)
    result = storage.restore(
        args.snapshot,
        target_dir=args.destination,
        create_backup=not args.no_backup,
    )
    if result.backup is not None:
        print(f"Backed up current state as {result.backup.id}")
    print(f"Restored {result.files_restored} file(s) from {result.snapshot_id} to {result.target}")
    return EXIT_SUCCESS


def cmd_delete(args: argparse.Namespace, config: Configuration) -> int:
    """Execute the 'delete' command - delete a snapshot."""
    storage = _open_storage(args, config)
    if storage.delete(args.snapshot):
        print(f"Deleted snapshot {args.snapshot}")
    else:
        print(f"Snapshot {args.snapshot} does not exist; nothing to delete")
    return EXIT_SUCCESS


def cmd_compare(args: argparse.Namespace, config: Configuration) -> int:
    """Execute the 'compare' command - compare a snapshot with the workspace."""
    storage = _open_storage(args, config)
    result = storage.compare(args.snapshot)

    if args.json:
        print(json.dumps({
            "snapshot": args.snapshot,
            "added": result.added,
            "modified": result.modified,
            "deleted": result.deleted,
            "unchanged": len(result.unchanged),
        }, indent=2))
        return EXIT_SUCCESS

    if not result.has_changes:
        print(f"No changes since {args.snapshot}")
        return EXIT_SUCCESS

    for path in result.added:
        print(f"  + {path}")
    for path in result.modified:
        print(f"  M {path}")
    for path in result.deleted:
        print(f"  - {path}")
    print(
        f"{len(result.added)} added, {len(result.modified)} modified, "
        f"{len(result.deleted)} deleted, {len(result.unchanged)} unchanged"
    )
    return EXIT_SUCCESS


def cmd_clean(args: argparse.Namespace, config: Configuration) -> int:
    """Execute the 'clean' command - delete old snapshots."""
    days = args.days if args.days is not None else config.auto_clean_days
    storage = _open_storage(args, config)
    manager = RetentionManager(storage, days)
    if not manager.enabled:
        print("Auto-clean is disabled (days <= 0).")
        return EXIT_SUCCESS

    if args.dry_run:
        expired = manager.expired()
        if not expired:
            print(f"No snapshots older than {days} day(s).")
            return EXIT_SUCCESS
        print(f"Would delete {len(expired)} snapshot(s):")
        for record in expired:
            print(f"  {record.id}  {_format_timestamp(record.timestamp)}")
        return EXIT_SUCCESS

    result = manager.apply()
    print(
        f"Deleted {len(result.deleted)} snapshot(s), "
        f"freed {format_size(result.freed_bytes)}"
    )
    return EXIT_SUCCESS


def cmd_stats(args: argparse.Namespace, config: Configuration) -> int:
    """Execute the 'stats' command - show storage totals."""
    stats = _open_storage(args, config).stats()
    print("snapjournal Storage")
    print("=" * 40)
    print(f"Snapshots: {stats.total_snapshots}")
    print(f"Backups: {stats.total_backups}")
    print(f"Total size: {format_size(stats.total_size)}")
    print(f"Average size: {format_size(int(stats.average_size))}")
    if stats.newest is not None:
        print(f"Newest: {stats.newest.id} ({_format_timestamp(stats.newest.timestamp)})")
    if stats.oldest is not None:
        print(f"Oldest: {stats.oldest.id} ({_format_timestamp(stats.oldest.timestamp)})")
    return EXIT_SUCCESS


def cmd_reconcile(args: argparse.Namespace, config: Configuration) -> int:
    """Execute the 'reconcile' command - repair the index."""
    result = _open_storage(args, config).reconcile()
    print(
        f"Reconciled index: {len(result.added)} added, "
        f"{len(result.removed)} removed"
    )
    for snapshot_id in result.unreadable:
        print(f"  Unreadable container: {snapshot_id}", file=sys.stderr)
    return EXIT_SUCCESS


def generate_changelog_markdown(
    records: List[SnapshotRecord],
    generated_at: Optional[datetime] = None,
) -> str:
    """Render snapshots as a markdown changelog, newest first."""
    generated_at = generated_at or datetime.now()
    lines = [
        "# Snapshot Changelog",
        "",
        f"Generated on {generated_at.strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        f"Total snapshots: {len(records)}",
        "",
        "## Snapshots",
        "",
    ]
    for record in records:
        lines.append(f"### {_format_timestamp(record.timestamp)}")
        lines.append(f"- **Id:** {record.id}")
        lines.append(f"- **Files:** {record.file_count}")
        lines.append(f"- **Size:** {format_size(record.size)}")
        if record.message:
            lines.append(f"- **Message:** {record.message}")
        lines.append("")
    return "\n".join(lines)


def cmd_export_changelog(args: argparse.Namespace, config: Configuration) -> int:
    """Execute the 'export-changelog' command."""
    records = _open_storage(args, config).list(include_backups=False)
    changelog = generate_changelog_markdown(records)
    if args.output is None:
        print(changelog)
        return EXIT_SUCCESS

    try:
        args.output.write_text(changelog, encoding="utf-8")
    except OSError as e:
        print(f"Cannot write {args.output}: {e}", file=sys.stderr)
        return EXIT_STORAGE_ERROR
    print(f"Changelog written to {args.output}")
    return EXIT_SUCCESS


def cmd_init(args: argparse.Namespace) -> int:
    """Execute the 'init' command - create default config."""
    config_path = args.config or DEFAULT_CONFIG_PATH

    if config_path.exists() and not args.force:
        print(f"Config file already exists: {config_path}", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(create_default_config())

    print(f"Created default config: {config_path}")
    return EXIT_SUCCESS


COMMANDS = {
    'create': cmd_create,
    'list': cmd_list,
    'show': cmd_show,
    'restore': cmd_restore,
    'delete': cmd_delete,
    'compare': cmd_compare,
    'clean': cmd_clean,
    'stats': cmd_stats,
    'reconcile': cmd_reconcile,
    'export-changelog': cmd_export_changelog,
}


def _report_failure(args: argparse.Namespace, error: Exception, summary: str) -> None:
    """Log a failed command and print the summary with troubleshooting guidance."""
    log_operation_error(logger, error, context=args.command)
    print(summary, file=sys.stderr)
    print(get_error_guidance(map_exception_to_error_code(error)), file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_SUCCESS

    if args.command == 'init':
        return cmd_init(args)

    handler = COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return EXIT_GENERAL_ERROR

    config = _load_config(args)
    if config is None:
        return EXIT_CONFIG_ERROR

    try:
        return handler(args, config)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130  # Standard exit code for SIGINT
    except LockError as e:
        _report_failure(args, e, f"Storage is busy: {e}")
        return EXIT_LOCK_ERROR
    except NotFoundError as e:
        _report_failure(args, e, f"Snapshot not found: {e.snapshot_id}")
        return EXIT_NOT_FOUND
    except (ConflictError, CorruptContainerError, IndexCorruptionError) as e:
        _report_failure(args, e, f"Error: {e}")
        return EXIT_CONFLICT_ERROR
    except StorageError as e:
        _report_failure(args, e, f"Error: {e}")
        return EXIT_STORAGE_ERROR


if __name__ == "__main__":
    sys.exit(main())
