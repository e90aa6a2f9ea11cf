"""Exception hierarchy shared across extraction, normalisation, and repacking.

The recompression pipeline touches archive parsing, the scratch store, an
external image optimiser, and user supplied configuration. This module groups
those failure modes so callers (most notably the folder-mode batch loop) can
react to high-level categories while still having access to the specialised
subclasses when finer-grained handling is required.

Filesystem failures are not wrapped: :class:`OSError` propagates unmodified to
the caller of ``recompress``.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "DetonaterError",
    "ArchiveError",
    "InvalidArchiveError",
    "UnsafeArchiveError",
    "WorkspaceError",
    "OptimizerError",
    "OptimizerTimeout",
    "UserConfigError",
    "ConfigError",
]


class DetonaterError(RuntimeError):
    """Base exception for recompression failures."""


class ArchiveError(DetonaterError):
    """Raised when an archive cannot be processed."""

    def __init__(self, message: str, *, archive: Optional[str] = None) -> None:
        super().__init__(message)
        self.archive = archive


class InvalidArchiveError(ArchiveError):
    """Raised when the input is not a readable ZIP container."""


class UnsafeArchiveError(ArchiveError):
    """Raised when an entry would escape the extraction workspace."""


class WorkspaceError(DetonaterError):
    """Raised when the scratch store is used after cleanup or misconfigured."""


class OptimizerError(DetonaterError):
    """Raised when the external image optimiser cannot complete."""

    def __init__(self, message: str, *, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class OptimizerTimeout(OptimizerError):
    """Raised when the optimiser exceeds its time budget."""


class UserConfigError(RuntimeError):
    """Raised when CLI arguments or configuration files are invalid."""


# Shorter alias accepted by callers.
ConfigError = UserConfigError
