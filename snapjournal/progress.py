"""Progress reporting for snapjournal.

This module provides the ProgressReporter class that the scanner and the
archive codec feed while they work through a tree, so a caller can show
progress for long captures.
"""

from dataclasses import dataclass, replace
from typing import Callable, Optional
import logging


logger = logging.getLogger(__name__)

PHASE_SCAN = "scan"
PHASE_PACK = "pack"
PHASE_EXTRACT = "extract"


@dataclass
class ProgressInfo:
    """Current progress information."""
    phase: str = PHASE_SCAN
    files_done: int = 0
    total_files: Optional[int] = None
    bytes_done: int = 0
    current_file: Optional[str] = None

    @property
    def percent_complete(self) -> Optional[float]:
        if not self.total_files:
            return None
        return min(100.0, 100.0 * self.files_done / self.total_files)


class ProgressReporter:
    """
    Accumulates per-file progress and forwards snapshots of it to a callback.

    A failing callback is logged and otherwise ignored; progress display
    must never abort a capture.
    """

    def __init__(self, callback: Optional[Callable[[ProgressInfo], None]] = None):
        self.callback = callback
        self._current = ProgressInfo()

    def start_phase(self, phase: str, total_files: Optional[int] = None) -> None:
        self._current = ProgressInfo(phase=phase, total_files=total_files)
        self._emit()

    def file_done(self, relative_path: str, size: int) -> None:
        self._current.files_done += 1
        self._current.bytes_done += size
        self._current.current_file = relative_path
        self._emit()

    def get_current_progress(self) -> ProgressInfo:
        return replace(self._current)

    def _emit(self) -> None:
        if self.callback is None:
            return
        try:
            self.callback(self.get_current_progress())
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")
