# === NAVMAP v1 ===
# {
#   "module": "Detonater.normalizer",
#   "purpose": "Entry classification and in-place normalisation of workspace files",
#   "sections": [
#     {"id": "entrykind", "name": "EntryKind", "anchor": "class-entrykind", "kind": "class"},
#     {"id": "classify-entry", "name": "classify_entry", "anchor": "function-classify-entry", "kind": "function"},
#     {"id": "normalize-structured-text", "name": "normalize_structured_text", "anchor": "function-normalize-structured-text", "kind": "function"},
#     {"id": "optimize-image", "name": "optimize_image", "anchor": "function-optimize-image", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Entry normalisation for extracted workspaces.

Structured-text metadata (``.json`` and ``.mcmeta`` by default) is parsed and
rewritten with two-space indentation, preserving key order and value types.
Files that fail to parse are left byte-for-byte untouched and reported with a
warning. Images are handed to an :class:`~Detonater.optimizer.ImageOptimizer`.
Both rewrites keep the file's modification time so a repacked archive depends
only on content.
"""

from __future__ import annotations

import enum
import json
import logging
from pathlib import Path
from typing import Any, Optional

from .io.filesystem import long_path, preserved_mtime
from .logging_utils import get_logger
from .optimizer import ImageOptimizer, OptimizationResult
from .settings import RecompressionSettings, WINDOWS_MAX_PATH

__all__ = [
    "EntryKind",
    "canonical_json",
    "classify_entry",
    "normalize_structured_text",
    "optimize_image",
]

LOGGER = get_logger("normalize")


class EntryKind(str, enum.Enum):
    """Recognised suffix classes."""

    STRUCTURED_TEXT = "structured_text"
    IMAGE = "image"
    ARCHIVE = "archive"


def classify_entry(name: str, settings: RecompressionSettings) -> Optional[EntryKind]:
    """Return the :class:`EntryKind` for ``name`` or ``None`` when unrecognised."""

    lowered = name.lower()
    if lowered.endswith(settings.archive_suffixes):
        return EntryKind.ARCHIVE
    if lowered.endswith(settings.structured_suffixes):
        return EntryKind.STRUCTURED_TEXT
    if lowered.endswith(settings.image_suffixes):
        return EntryKind.IMAGE
    return None


def _reject_constant(value: str) -> Any:
    raise ValueError(f"non-standard JSON constant {value}")


def canonical_json(text: str, *, indent: int = 2) -> str:
    """Return ``text`` re-serialised with ``indent`` spaces.

    Raises:
        ValueError: If ``text`` is not well-formed JSON (``NaN``/``Infinity``
            included) or holds a number that overflows to infinity, such as
            ``1e400``.
    """

    document = json.loads(text, parse_constant=_reject_constant)
    return json.dumps(document, indent=indent, ensure_ascii=False, allow_nan=False)


def normalize_structured_text(
    path: Path,
    *,
    indent: int = 2,
    long_path_threshold: int = WINDOWS_MAX_PATH,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """Rewrite ``path`` in canonical indented form.

    Returns:
        ``True`` when the file parsed (whether or not bytes changed), ``False``
        when it was malformed and left untouched.
    """

    log = logger or LOGGER
    native = long_path(path, long_path_threshold)
    with open(native, "rb") as handle:
        original = handle.read()
    try:
        rendered = canonical_json(original.decode("utf-8"), indent=indent).encode("utf-8")
    except (UnicodeDecodeError, ValueError) as exc:
        log.warning(
            "malformed structured text %s left unchanged: %s",
            path.name,
            exc,
            extra={"stage": "normalize", "entry": str(path)},
        )
        return False

    if rendered != original:
        with preserved_mtime(path, long_path_threshold):
            with open(native, "wb") as handle:
                handle.write(rendered)
    log.debug("normalized %s", path.name, extra={"stage": "normalize", "entry": str(path)})
    return True


def optimize_image(
    path: Path,
    optimizer: ImageOptimizer,
    *,
    long_path_threshold: int = WINDOWS_MAX_PATH,
    logger: Optional[logging.Logger] = None,
) -> OptimizationResult:
    """Run ``optimizer`` on ``path``, logging a warning when it fails."""

    log = logger or LOGGER
    with preserved_mtime(path, long_path_threshold):
        result = optimizer.optimize(path)
    if not result.ok and not result.skipped:
        log.warning(
            "image optimisation failed for %s: %s",
            path.name,
            result.message,
            extra={"stage": "optimize", "entry": str(path)},
        )
    elif result.ok and not result.skipped:
        log.debug(
            "optimized %s (%d bytes saved)",
            path.name,
            result.saved_bytes,
            extra={"stage": "optimize", "entry": str(path)},
        )
    return result
