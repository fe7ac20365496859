"""Directory tree scanning for captures.

The scanner walks a tree, asks the PatternFilter about every directory and
file, and reads accepted files into ArchiveEntry objects. Unreadable files
are skipped with a warning so one bad file does not sink a capture.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional
import logging
import os
import threading

from snapjournal.archive import ArchiveEntry
from snapjournal.errors import OperationCancelled, SnapshotIOError
from snapjournal.logger import ErrorCode
from snapjournal.patterns import PatternFilter
from snapjournal.progress import PHASE_SCAN, ProgressInfo, ProgressReporter


logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Entries accepted by a scan, in traversal order, plus skipped-file warnings."""
    entries: List[ArchiveEntry] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def file_count(self) -> int:
        return len(self.entries)

    @property
    def total_bytes(self) -> int:
        return sum(e.size for e in self.entries)


class FileTreeScanner:
    """
    Recursively enumerates a directory tree into archive entries.

    Directories in skip_dirs (absolute paths, typically the snapshot storage
    directory) are never entered, so a capture never includes itself.
    Symbolic links are not followed.
    """

    def __init__(
        self,
        pattern_filter: Optional[PatternFilter] = None,
        skip_dirs: Iterable[Path] = (),
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[Callable[[ProgressInfo], None]] = None,
    ):
        self.pattern_filter = pattern_filter or PatternFilter()
        self.skip_dirs = {self._real(Path(d)) for d in skip_dirs}
        self.cancel_event = cancel_event
        self.progress = ProgressReporter(progress_callback) if progress_callback else None

    @staticmethod
    def _real(path: Path) -> str:
        return os.path.realpath(str(path))

    def _check_cancel(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise OperationCancelled("Scan cancelled")

    def scan(self, root: Path) -> ScanResult:
        """
        Walk root and collect every accepted file.

        Raises:
            SnapshotIOError: if root does not exist or is not a directory
            OperationCancelled: if the cancel event is set during the walk
        """
        root = Path(root)
        if not root.is_dir():
            raise SnapshotIOError(
                f"Capture root is not a directory: {root}", ErrorCode.IO_READ_FAILED
            )

        result = ScanResult()
        if self.progress is not None:
            self.progress.start_phase(PHASE_SCAN)
        self._walk(root, "", result)
        logger.debug(
            f"Scanned {root}: {result.file_count} file(s), "
            f"{len(result.warnings)} warning(s)"
        )
        return result

    def _walk(self, directory: Path, rel_dir: str, result: ScanResult) -> None:
        try:
            with os.scandir(directory) as it:
                children = sorted(it, key=lambda e: e.name)
        except OSError as e:
            self._warn(result, rel_dir or ".", e)
            return

        for child in children:
            self._check_cancel()
            rel_path = f"{rel_dir}/{child.name}" if rel_dir else child.name

            try:
                if child.is_symlink():
                    logger.debug(f"Skipping symlink {rel_path}")
                    continue
                is_dir = child.is_dir(follow_symlinks=False)
                is_file = child.is_file(follow_symlinks=False)
            except OSError as e:
                self._warn(result, rel_path, e)
                continue

            if is_dir:
                if self._real(Path(child.path)) in self.skip_dirs:
                    continue
                # Prune excluded subtrees before descending
                if self.pattern_filter.included_dir(rel_path):
                    self._walk(Path(child.path), rel_path, result)
            elif is_file:
                if self.pattern_filter.included(rel_path):
                    self._read_file(Path(child.path), rel_path, result)
            # sockets, fifos and devices are not captured

    def _read_file(self, path: Path, rel_path: str, result: ScanResult) -> None:
        try:
            data = path.read_bytes()
            mtime = path.stat().st_mtime
        except OSError as e:
            self._warn(result, rel_path, e)
            return
        result.entries.append(ArchiveEntry(path=rel_path, data=data, mtime=mtime))
        if self.progress is not None:
            self.progress.file_done(rel_path, len(data))

    @staticmethod
    def _warn(result: ScanResult, rel_path: str, error: OSError) -> None:
        message = f"Skipping {rel_path}: {error.strerror or error}"
        logger.warning(message)
        result.warnings.append(message)


def scan(root: Path, pattern_filter: Optional[PatternFilter] = None) -> ScanResult:
    """Scan root with a filter (defaults only when none is given)."""
    return FileTreeScanner(pattern_filter).scan(root)
