# === NAVMAP v1 ===
# {
#   "module": "Detonater.io.archive",
#   "purpose": "Extract ZIP containers into workspaces and rebuild them at a chosen compression mode",
#   "sections": [
#     {"id": "modes", "name": "Compression Modes", "anchor": "MOD", "kind": "api"},
#     {"id": "builder", "name": "Archive Builder", "anchor": "BLD", "kind": "api"},
#     {"id": "extract", "name": "Extraction", "anchor": "EXT", "kind": "api"},
#     {"id": "repack", "name": "Repacking", "anchor": "REP", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""ZIP/JAR extraction and repacking.

Extraction mirrors every entry of an archive under a destination directory:
directory markers become directories, file entries become files whose parents
are created on demand, so entry order inside the archive never matters. Entry
timestamps are stamped onto the written files.

Repacking walks a workspace in sorted order and feeds an
:class:`ArchiveBuilder`, which serialises the collected entries either
uncompressed (``STORE``, used for nested archives) or at maximum ``DEFLATE``.
Entries flagged ``stored`` (nested archives found during the walk) stay
uncompressed in either mode.
Entry names always use forward slashes, whatever the host separator is.

Both directions route filesystem calls through
:func:`~Detonater.io.filesystem.long_path` so deep trees survive the Windows
``MAX_PATH`` ceiling.
"""

from __future__ import annotations

import enum
import io
import logging
import os
import stat
import time
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from ..errors import InvalidArchiveError
from ..settings import DEFAULT_MIME_TYPE, WINDOWS_MAX_PATH
from .filesystem import long_path, raise_walk_error, validate_member_path

__all__ = [
    "ArchiveBuilder",
    "ArchiveEntry",
    "CompressionMode",
    "extract_archive",
    "is_archive",
    "repack_workspace",
]

DateTime = Tuple[int, int, int, int, int, int]

_MIN_DATE_TIME: DateTime = (1980, 1, 1, 0, 0, 0)
_MAX_DATE_TIME: DateTime = (2107, 12, 31, 23, 59, 58)
_DIR_ATTR = 0x10


class CompressionMode(str, enum.Enum):
    """Per-repack serialisation setting."""

    STORE = "store"
    DEFLATE = "deflate"

    @property
    def zip_constant(self) -> int:
        """Return the :mod:`zipfile` compression constant for this mode."""
        if self is CompressionMode.STORE:
            return zipfile.ZIP_STORED
        return zipfile.ZIP_DEFLATED

    @classmethod
    def for_nesting(cls, is_nested: bool) -> "CompressionMode":
        return cls.STORE if is_nested else cls.DEFLATE


@dataclass(frozen=True)
class ArchiveEntry:
    """One directory marker or file destined for the rebuilt archive."""

    name: str
    data: bytes
    is_dir: bool
    date_time: DateTime
    external_attr: int
    stored: bool = False


def _clamp_date_time(value: Optional[Tuple[int, ...]]) -> DateTime:
    if value is None:
        value = time.localtime()[:6]
    candidate = tuple(int(part) for part in value[:6])
    if candidate < _MIN_DATE_TIME:
        return _MIN_DATE_TIME
    if candidate > _MAX_DATE_TIME:
        return _MAX_DATE_TIME
    return candidate  # type: ignore[return-value]


class ArchiveBuilder:
    """Collects entries and serialises them as a ZIP container."""

    def __init__(self, *, mime_type: str = DEFAULT_MIME_TYPE) -> None:
        self.mime_type = mime_type
        self._entries: Dict[str, ArchiveEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ArchiveEntry]:
        return iter(self._entries.values())

    @property
    def names(self) -> List[str]:
        return list(self._entries)

    def add_directory(
        self,
        name: str,
        *,
        date_time: Optional[Tuple[int, ...]] = None,
        mode: int = 0o755,
    ) -> ArchiveEntry:
        """Add a directory marker; ``name`` gains a trailing slash if missing."""

        normalized = name.replace("\\", "/").strip("/") + "/"
        entry = ArchiveEntry(
            name=normalized,
            data=b"",
            is_dir=True,
            date_time=_clamp_date_time(date_time),
            external_attr=((stat.S_IFDIR | stat.S_IMODE(mode)) << 16) | _DIR_ATTR,
        )
        self._entries[normalized] = entry
        return entry

    def add_file(
        self,
        name: str,
        data: bytes,
        *,
        date_time: Optional[Tuple[int, ...]] = None,
        mode: int = 0o644,
        stored: bool = False,
    ) -> ArchiveEntry:
        """Add a file entry holding ``data``.

        ``stored`` entries are always written uncompressed, whatever mode the
        archive is serialised with. Nested archives are added this way.
        """

        normalized = name.replace("\\", "/").lstrip("/")
        entry = ArchiveEntry(
            name=normalized,
            data=bytes(data),
            is_dir=False,
            date_time=_clamp_date_time(date_time),
            external_attr=(stat.S_IFREG | stat.S_IMODE(mode)) << 16,
            stored=stored,
        )
        self._entries[normalized] = entry
        return entry

    def serialize(self, mode: CompressionMode, *, level: int = 9) -> bytes:
        """Return the ZIP bytes for all collected entries.

        Args:
            mode: ``STORE`` keeps every payload uncompressed; ``DEFLATE`` uses
                ``level`` for every file entry not flagged ``stored``.
            level: zlib compression level used with ``DEFLATE``.

        Returns:
            Serialised archive.
        """

        compress_type = mode.zip_constant
        compresslevel = level if mode is CompressionMode.DEFLATE else None
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=compress_type) as archive:
            for entry in self._entries.values():
                info = zipfile.ZipInfo(entry.name, date_time=entry.date_time)
                info.external_attr = entry.external_attr
                if entry.is_dir:
                    info.compress_type = zipfile.ZIP_STORED
                    archive.writestr(info, b"")
                    continue
                if entry.stored:
                    archive.writestr(info, entry.data, compress_type=zipfile.ZIP_STORED)
                    continue
                archive.writestr(
                    info,
                    entry.data,
                    compress_type=compress_type,
                    compresslevel=compresslevel,
                )
        return buffer.getvalue()


def is_archive(path: Path, *, long_path_threshold: int = WINDOWS_MAX_PATH) -> bool:
    """Return ``True`` when ``path`` holds a readable ZIP container."""

    return zipfile.is_zipfile(long_path(path, long_path_threshold))


def _stamp(native_path: str, info: zipfile.ZipInfo) -> None:
    try:
        timestamp = time.mktime(tuple(info.date_time) + (0, 0, -1))
        os.utime(native_path, (timestamp, timestamp))
    except (OverflowError, ValueError, OSError):
        pass  # entry carries no usable timestamp


def extract_archive(
    archive_path: Path,
    destination: Path,
    *,
    long_path_threshold: int = WINDOWS_MAX_PATH,
    windows: Optional[bool] = None,
    logger: Optional[logging.Logger] = None,
) -> List[Path]:
    """Extract every entry of ``archive_path`` beneath ``destination``.

    Args:
        archive_path: ZIP/JAR file to unpack.
        destination: Workspace directory that mirrors the entry hierarchy.
        long_path_threshold: Path length that triggers the long-path shim.
        windows: Override platform detection for the long-path shim.
        logger: Optional logger for structured ``stage="extract"`` records.

    Returns:
        Paths of extracted regular files, in archive order.

    Raises:
        InvalidArchiveError: If the input is not a readable ZIP archive or an
            entry is truncated or corrupt.
        UnsafeArchiveError: If an entry name is absolute or escapes ``destination``.
        OSError: On filesystem failures; propagated unchanged.
    """

    def native(path: Path) -> str:
        return long_path(path, long_path_threshold, windows=windows)

    try:
        archive = zipfile.ZipFile(native(archive_path))
    except (zipfile.BadZipFile, EOFError, ValueError) as exc:
        raise InvalidArchiveError(
            f"Not a valid archive: {archive_path}", archive=str(archive_path)
        ) from exc

    extracted: List[Path] = []
    directories: List[Tuple[str, zipfile.ZipInfo]] = []
    with archive:
        if logger:
            logger.debug(
                "extracting archive",
                extra={"stage": "extract", "archive": str(archive_path), "entries": len(archive.infolist())},
            )
        for info in archive.infolist():
            relative = validate_member_path(info.filename)
            target = destination.joinpath(*relative.parts)
            target_native = native(target)
            if info.is_dir():
                os.makedirs(target_native, exist_ok=True)
                directories.append((target_native, info))
                continue

            os.makedirs(native(target.parent), exist_ok=True)
            try:
                payload = archive.read(info)
            except (
                zipfile.BadZipFile,
                zlib.error,
                EOFError,
                ValueError,
                NotImplementedError,
                RuntimeError,
            ) as exc:
                raise InvalidArchiveError(
                    f"Cannot read entry '{info.filename}' from {archive_path}: {exc}",
                    archive=str(archive_path),
                ) from exc
            with open(target_native, "wb") as handle:
                handle.write(payload)
            _stamp(target_native, info)
            extracted.append(target)

    # Directory times last, since writing children updates them.
    for target_native, info in reversed(directories):
        _stamp(target_native, info)

    if logger:
        logger.info(
            "extracted archive",
            extra={
                "stage": "extract",
                "archive": str(archive_path),
                "files": len(extracted),
                "directories": len(directories),
            },
        )
    return extracted


def repack_workspace(
    workspace: Path,
    *,
    long_path_threshold: int = WINDOWS_MAX_PATH,
    windows: Optional[bool] = None,
    mime_type: str = DEFAULT_MIME_TYPE,
    stored_suffixes: Sequence[str] = (".jar",),
) -> ArchiveBuilder:
    """Walk ``workspace`` and collect its directories and files into a builder.

    Every directory below the root becomes a directory marker and every file a
    file entry named by its path relative to ``workspace``. The walk is sorted
    so the same tree always produces the same archive. Files ending in one of
    ``stored_suffixes`` that hold a ZIP container are flagged ``stored``.

    Raises:
        OSError: If a directory cannot be listed or a file cannot be read.
    """

    builder = ArchiveBuilder(mime_type=mime_type)
    lowered = tuple(suffix.lower() for suffix in stored_suffixes)
    root = os.fspath(workspace)
    for current, dirnames, filenames in os.walk(root, onerror=raise_walk_error):
        dirnames.sort()
        filenames.sort()
        current_path = Path(current)
        if current != root:
            relative_dir = current_path.relative_to(workspace).as_posix()
            info = os.stat(long_path(current_path, long_path_threshold, windows=windows))
            builder.add_directory(
                relative_dir,
                date_time=time.localtime(info.st_mtime)[:6],
                mode=info.st_mode,
            )
        for filename in filenames:
            file_path = current_path / filename
            native_file = long_path(file_path, long_path_threshold, windows=windows)
            info = os.stat(native_file)
            with open(native_file, "rb") as handle:
                payload = handle.read()
            stored = bool(lowered) and filename.lower().endswith(lowered)
            builder.add_file(
                file_path.relative_to(workspace).as_posix(),
                payload,
                date_time=time.localtime(info.st_mtime)[:6],
                mode=info.st_mode,
                stored=stored and zipfile.is_zipfile(io.BytesIO(payload)),
            )
    return builder
