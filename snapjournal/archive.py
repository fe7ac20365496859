"""Container format for snapshots.

A container is a ZIP file holding the raw bytes of every captured file
under its POSIX-style relative path. The ZIP comment carries the JSON
metadata of the snapshot so the index can be rebuilt from containers.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional, Union
import io
import logging
import os
import tempfile
import threading
import time
import zipfile

from snapjournal.errors import (
    ConflictError,
    CorruptContainerError,
    OperationCancelled,
    SnapshotIOError,
)
from snapjournal.logger import ErrorCode
from snapjournal.progress import PHASE_EXTRACT, PHASE_PACK, ProgressReporter


logger = logging.getLogger(__name__)

CONTAINER_SUFFIX = ".zip"

# ZIP cannot represent timestamps before 1980
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)
_ZIP_LATEST = (2107, 12, 31, 23, 59, 58)
_MAX_COMMENT = 65535

ContainerSource = Union[bytes, str, Path]


@dataclass(frozen=True)
class ArchiveEntry:
    """One regular file in a capture."""
    path: str
    data: bytes
    mtime: Optional[float] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class MemberInfo:
    """Stored size and CRC-32 of one container member."""
    path: str
    size: int
    crc: int


def normalize_entry_path(path: str) -> str:
    """
    Normalise a relative path to the stored form.

    Raises:
        ValueError: if the path is empty, absolute, or climbs out with ``..``
    """
    text = path.replace("\\", "/")
    if text.startswith("/") or (len(text) > 1 and text[1] == ":"):
        raise ValueError(f"Absolute path not allowed in container: {path!r}")
    parts = [p for p in text.split("/") if p not in ("", ".")]
    if not parts:
        raise ValueError(f"Empty path not allowed in container: {path!r}")
    if ".." in parts:
        raise ValueError(f"Parent reference not allowed in container: {path!r}")
    return "/".join(parts)


def _date_time(mtime: Optional[float]) -> tuple:
    if mtime is None:
        mtime = time.time()
    stamp = time.localtime(mtime)[:6]
    return min(max(stamp, _ZIP_EPOCH), _ZIP_LATEST)


def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled("Operation cancelled")


def _write_zip(
    fileobj: BinaryIO,
    entries: Iterable[ArchiveEntry],
    comment: Optional[bytes],
    cancel_event: Optional[threading.Event],
    progress: Optional[ProgressReporter],
) -> int:
    """Write entries into fileobj as a ZIP archive. Returns the member count."""
    seen = set()
    count = 0
    with zipfile.ZipFile(fileobj, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for entry in entries:
            _check_cancel(cancel_event)
            name = normalize_entry_path(entry.path)
            if name in seen:
                raise ValueError(f"Duplicate path in container: {name}")
            seen.add(name)
            info = zipfile.ZipInfo(name, date_time=_date_time(entry.mtime))
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            zf.writestr(info, entry.data)
            count += 1
            if progress is not None:
                progress.file_done(name, entry.size)
        if comment:
            if len(comment) > _MAX_COMMENT:
                raise ValueError("Container comment exceeds 65535 bytes")
            zf.comment = comment
    return count


def pack(
    entries: Iterable[ArchiveEntry],
    comment: Optional[bytes] = None,
    cancel_event: Optional[threading.Event] = None,
    progress: Optional[ProgressReporter] = None,
) -> bytes:
    """Encode entries into container bytes."""
    buffer = io.BytesIO()
    _write_zip(buffer, entries, comment, cancel_event, progress)
    return buffer.getvalue()


def write_container(
    path: Path,
    entries: List[ArchiveEntry],
    comment: Optional[bytes] = None,
    cancel_event: Optional[threading.Event] = None,
    progress: Optional[ProgressReporter] = None,
) -> int:
    """
    Write a container file atomically.

    The archive is streamed to a temporary file next to ``path`` and renamed
    into place once complete, so a crash or cancellation never leaves a
    half-written container under the final name.

    Returns:
        Size in bytes of the written container

    Raises:
        SnapshotIOError: if the file cannot be written
        OperationCancelled: if cancel_event is set while packing
    """
    path = Path(path)
    if progress is not None:
        progress.start_phase(PHASE_PACK, total_files=len(entries))
    try:
        fd, tmp_name = tempfile.mkstemp(
            dir=str(path.parent), prefix=f".{path.stem}.", suffix=".tmp"
        )
    except OSError as e:
        raise SnapshotIOError(f"Cannot create container in {path.parent}: {e}")

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            _write_zip(f, entries, comment, cancel_event, progress)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise SnapshotIOError(f"Cannot write container {path}: {e}")
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise

    try:
        return path.stat().st_size
    except OSError as e:
        raise SnapshotIOError(f"Cannot stat container {path}: {e}")


def _open(source: ContainerSource) -> zipfile.ZipFile:
    try:
        if isinstance(source, (bytes, bytearray)):
            return zipfile.ZipFile(io.BytesIO(source))
        return zipfile.ZipFile(str(source))
    except FileNotFoundError:
        raise
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as e:
        raise CorruptContainerError(f"Container cannot be decoded: {e}")
    except OSError as e:
        raise SnapshotIOError(
            f"Cannot read container {source}: {e}", ErrorCode.IO_READ_FAILED
        )


def _read_member(zf: zipfile.ZipFile, name: str) -> bytes:
    try:
        return zf.read(name)
    except (zipfile.BadZipFile, EOFError, ValueError) as e:
        # CRC mismatches and truncated members surface as BadZipFile
        raise CorruptContainerError(f"Container member {name} is damaged: {e}")


def _file_members(zf: zipfile.ZipFile) -> List[zipfile.ZipInfo]:
    return [info for info in zf.infolist() if not info.is_dir()]


def verify(source: ContainerSource) -> int:
    """
    Check every member's CRC.

    Returns:
        Number of file members

    Raises:
        CorruptContainerError: if any member is damaged
    """
    with _open(source) as zf:
        try:
            bad = zf.testzip()
        except (zipfile.BadZipFile, EOFError, ValueError) as e:
            raise CorruptContainerError(f"Container cannot be decoded: {e}")
        if bad is not None:
            raise CorruptContainerError(f"Container member {bad} is damaged")
        return len(_file_members(zf))


def read_entries(source: ContainerSource) -> List[ArchiveEntry]:
    """Decode a container back into entries."""
    with _open(source) as zf:
        entries = []
        for info in _file_members(zf):
            entries.append(ArchiveEntry(
                path=info.filename,
                data=_read_member(zf, info.filename),
                mtime=time.mktime(info.date_time + (0, 0, -1)),
            ))
        return entries


def list_members(source: ContainerSource) -> Dict[str, MemberInfo]:
    """Return stored size and CRC for every file member, keyed by path."""
    with _open(source) as zf:
        return {
            info.filename: MemberInfo(info.filename, info.file_size, info.CRC)
            for info in _file_members(zf)
        }


def read_comment(source: ContainerSource) -> bytes:
    with _open(source) as zf:
        return zf.comment


def _resolve_destination(target_root: Path, name: str) -> Path:
    """Map a member name to a path inside target_root or refuse it."""
    try:
        relative = normalize_entry_path(name)
    except ValueError as e:
        raise ConflictError(name, str(e), ErrorCode.EXTRACT_PATH_TRAVERSAL)
    dest = (target_root / relative).resolve()
    if dest != target_root and target_root not in dest.parents:
        raise ConflictError(
            name,
            f"Entry {name} resolves outside {target_root}",
            ErrorCode.EXTRACT_PATH_TRAVERSAL,
        )
    return dest


def unpack(
    source: ContainerSource,
    target_dir: Path,
    overwrite: bool = False,
    cancel_event: Optional[threading.Event] = None,
    progress: Optional[ProgressReporter] = None,
) -> List[str]:
    """
    Extract a container into target_dir.

    Every member path is checked before anything is written: a path that
    escapes target_dir, or (without overwrite) one that already exists,
    fails the whole extraction with ConflictError.

    Returns:
        The relative paths written, in container order

    Raises:
        ConflictError: path traversal, or an existing file when overwrite is False
        CorruptContainerError: undecodable container or damaged member
        SnapshotIOError: a file or directory cannot be written
    """
    target_root = Path(target_dir)
    try:
        target_root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise SnapshotIOError(f"Cannot create restore target {target_root}: {e}")
    target_root = target_root.resolve()

    with _open(source) as zf:
        members = _file_members(zf)
        plan = []
        for info in members:
            dest = _resolve_destination(target_root, info.filename)
            for parent in dest.parents:
                if parent == target_root:
                    break
                if parent.exists() and not parent.is_dir():
                    raise ConflictError(
                        info.filename,
                        f"Cannot restore {info.filename}: "
                        f"{parent.relative_to(target_root)} is a file",
                    )
            if dest.is_dir():
                raise ConflictError(
                    info.filename,
                    f"Cannot restore {info.filename}: a directory is in the way",
                )
            if dest.exists() and not overwrite:
                raise ConflictError(
                    info.filename,
                    f"Refusing to overwrite existing file {info.filename}",
                )
            plan.append((info, dest))

        if progress is not None:
            progress.start_phase(PHASE_EXTRACT, total_files=len(plan))

        written = []
        for info, dest in plan:
            _check_cancel(cancel_event)
            data = _read_member(zf, info.filename)
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                with open(dest, "wb") as f:
                    f.write(data)
            except OSError as e:
                raise SnapshotIOError(f"Cannot write {dest}: {e}")
            written.append(info.filename)
            if progress is not None:
                progress.file_done(info.filename, len(data))

    logger.debug(f"Extracted {len(written)} file(s) into {target_root}")
    return written
