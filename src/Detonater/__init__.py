"""Public API for Detonater, a size-favouring recompressor for JAR/ZIP archives.

Archives are extracted into digest-keyed scratch workspaces, nested archives are
recompressed recursively, JSON metadata is normalised, PNG images are handed to
an external optimiser, and the result is repacked at maximum compression.
"""

from __future__ import annotations

from .errors import (
    ArchiveError,
    DetonaterError,
    InvalidArchiveError,
    OptimizerError,
    UnsafeArchiveError,
    UserConfigError,
    WorkspaceError,
)
from .io.archive import CompressionMode
from .optimizer import ImageOptimizer, NullOptimizer, OptimizationResult, OxipngOptimizer
from .pipeline import RecompressionResult, Recompressor, recompress_file
from .scratch import ScratchStore
from .settings import DetonaterSettings, get_default_config, load_config

__version__ = "2.0.0"

__all__ = [
    "__version__",
    "ArchiveError",
    "CompressionMode",
    "DetonaterError",
    "DetonaterSettings",
    "ImageOptimizer",
    "InvalidArchiveError",
    "NullOptimizer",
    "OptimizationResult",
    "OptimizerError",
    "OxipngOptimizer",
    "RecompressionResult",
    "Recompressor",
    "ScratchStore",
    "UnsafeArchiveError",
    "UserConfigError",
    "WorkspaceError",
    "get_default_config",
    "load_config",
    "recompress_file",
]
