# === NAVMAP v1 ===
# {
#   "module": "Detonater.io.filesystem",
#   "purpose": "Provide filesystem utilities for hashing, long-path handling, and atomic writes",
#   "sections": [
#     {"id": "hashing", "name": "Hashing Utilities", "anchor": "HAS", "kind": "helpers"},
#     {"id": "paths", "name": "Path Validation & Long Paths", "anchor": "PTH", "kind": "helpers"},
#     {"id": "writes", "name": "Atomic Writes & Timestamps", "anchor": "WRT", "kind": "helpers"}
#   ]
# }
# === /NAVMAP ===

"""Filesystem helpers for archive recompression.

Responsibilities include computing content digests for the scratch store,
validating archive member names before they touch disk, the Windows long-path
shim shared by extraction and repacking, atomic output writes, and keeping
modification times stable across in-place rewrites so repacked archives do not
depend on when normalisation happened.
"""

from __future__ import annotations

import contextlib
import hashlib
import os
import sys
import uuid
from pathlib import Path, PurePosixPath
from typing import Iterator, Optional, Union

from ..errors import UnsafeArchiveError

__all__ = [
    "LONG_PATH_PREFIX",
    "digest_file",
    "format_bytes",
    "long_path",
    "preserved_mtime",
    "raise_walk_error",
    "validate_member_path",
    "write_bytes_atomic",
]

LONG_PATH_PREFIX = "\\\\?\\"
_CHUNK_SIZE = 1 << 20

PathLike = Union[str, "os.PathLike[str]"]


def digest_file(path: Path, algorithm: str = "sha256") -> str:
    """Return the hex digest of ``path``'s bytes using ``algorithm``."""

    try:
        hasher = hashlib.new(algorithm)
    except ValueError as exc:  # pragma: no cover - settings validate algorithms up front
        raise ValueError(f"Unsupported digest algorithm '{algorithm}'") from exc
    with open(long_path(path), "rb") as stream:
        for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def long_path(
    path: PathLike,
    threshold: int = 260,
    *,
    windows: Optional[bool] = None,
) -> str:
    """Return ``path`` in a form the host filesystem accepts regardless of length.

    On Windows, paths whose length meets or exceeds ``threshold`` are rewritten
    with the ``\\\\?\\`` prefix and native separators. Everywhere else the path
    is returned unchanged. Only the filesystem call sees the rewritten string;
    logical entry names are never derived from it.

    Args:
        path: Filesystem path to adapt.
        threshold: Length at which the prefix is applied.
        windows: Override platform detection (``None`` inspects ``sys.platform``).

    Returns:
        String path suitable for ``open``/``os`` calls.
    """

    text = os.fspath(path)
    is_windows = sys.platform == "win32" if windows is None else windows
    if not is_windows or len(text) < threshold or text.startswith(LONG_PATH_PREFIX):
        return text
    return LONG_PATH_PREFIX + text.replace("/", "\\")


def validate_member_path(member_name: str) -> PurePosixPath:
    """Validate an archive member name and return it as a relative POSIX path.

    Names containing a backslash are rejected: the character is a separator on
    Windows and a plain name character elsewhere, so the entry would not
    round-trip under the same name on every host.
    """

    if "\\" in member_name:
        raise UnsafeArchiveError(f"Ambiguous backslash in archive entry: {member_name}")
    relative = PurePosixPath(member_name)
    if relative.is_absolute() or (len(member_name) > 1 and member_name[1] == ":"):
        raise UnsafeArchiveError(f"Unsafe absolute path detected in archive: {member_name}")
    parts = member_name.split("/")
    if parts and parts[-1] == "":
        parts = parts[:-1]
    if not parts:
        raise UnsafeArchiveError(f"Empty path detected in archive: {member_name}")
    if any(part in {"", ".", ".."} for part in parts):
        raise UnsafeArchiveError(f"Unsafe path detected in archive: {member_name}")
    return PurePosixPath(*parts)


def raise_walk_error(error: OSError) -> None:
    """``os.walk`` error hook: an unreadable directory fails the walk."""

    raise error


@contextlib.contextmanager
def preserved_mtime(path: Path, threshold: int = 260) -> Iterator[None]:
    """Restore ``path``'s access/modification times after the block rewrites it."""

    native = long_path(path, threshold)
    before = os.stat(native)
    yield
    if os.path.exists(native):
        os.utime(native, ns=(before.st_atime_ns, before.st_mtime_ns))


def write_bytes_atomic(path: Path, data: bytes) -> Path:
    """Write ``data`` to ``path`` via a sibling temp file and ``os.replace``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.tmp-{os.getpid()}-{uuid.uuid4().hex[:8]}")
    try:
        with temp_path.open("wb") as handle:
            handle.write(data)
            handle.flush()
            try:
                os.fsync(handle.fileno())
            except OSError:
                pass  # fsync not supported on this platform
        os.replace(temp_path, path)
    finally:
        temp_path.unlink(missing_ok=True)
    return path


def format_bytes(num: int) -> str:
    """Return a human-readable representation for ``num`` bytes."""

    value = float(num)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(value) < 1024.0 or unit == "TB":
            return f"{value:.2f} {unit}"
        value /= 1024.0
    return f"{value:.2f} TB"
