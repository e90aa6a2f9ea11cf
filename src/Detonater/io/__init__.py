"""Aggregated IO helpers for Detonater.

This subpackage bundles the filesystem utilities (content digests, the Windows
long-path shim, atomic writes) and the ZIP extraction/repacking primitives the
pipeline is assembled from. Re-exporting the most common symbols keeps import
ergonomics simple for the rest of the codebase.
"""

from .archive import (
    ArchiveBuilder,
    ArchiveEntry,
    CompressionMode,
    extract_archive,
    is_archive,
    repack_workspace,
)
from .filesystem import (
    LONG_PATH_PREFIX,
    digest_file,
    format_bytes,
    long_path,
    preserved_mtime,
    raise_walk_error,
    validate_member_path,
    write_bytes_atomic,
)

__all__ = [
    "ArchiveBuilder",
    "ArchiveEntry",
    "CompressionMode",
    "extract_archive",
    "is_archive",
    "repack_workspace",
    "LONG_PATH_PREFIX",
    "digest_file",
    "format_bytes",
    "long_path",
    "preserved_mtime",
    "raise_walk_error",
    "validate_member_path",
    "write_bytes_atomic",
]
