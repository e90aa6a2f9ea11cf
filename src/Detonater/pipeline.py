# === NAVMAP v1 ===
# {
#   "module": "Detonater.pipeline",
#   "purpose": "Recompression orchestrator with digest caching and recursive nested-archive handling",
#   "sections": [
#     {"id": "recompressionresult", "name": "RecompressionResult", "anchor": "class-recompressionresult", "kind": "class"},
#     {"id": "recompressor", "name": "Recompressor", "anchor": "class-recompressor", "kind": "class"},
#     {"id": "recompress-file", "name": "recompress_file", "anchor": "function-recompress-file", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Recompression orchestrator.

:class:`Recompressor` is the public entry point. For a source archive it:

1. digests the current bytes;
2. under the digest lock, reuses the completed workspace for that digest or
   builds one: extract, then a single sorted walk that recurses into nested
   archives (``is_nested=True``, result written back in place), normalises
   structured text and optimises images;
3. repacks the workspace, always, even on a cache hit;
4. serialises with ``STORE`` for nested archives and maximum ``DEFLATE`` for
   top-level ones; a nested archive is itself held uncompressed in its parent.

Only the extraction and normalisation work is cached. Serialisation is redone
on every call because the same content may be requested in both modes.

Recursion is plain and depth-first: a parent is never repacked before all of
its nested archives have been fully processed.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .errors import ArchiveError
from .io.archive import CompressionMode, extract_archive, is_archive, repack_workspace
from .io.filesystem import digest_file, long_path, preserved_mtime, raise_walk_error
from .logging_utils import get_logger
from .normalizer import EntryKind, classify_entry, normalize_structured_text, optimize_image
from .optimizer import ImageOptimizer, NullOptimizer, build_optimizer
from .scratch import ScratchStore
from .settings import DetonaterSettings, get_default_config

__all__ = ["RecompressionResult", "Recompressor", "WorkspaceReport", "recompress_file"]

LOGGER = get_logger("pipeline")


@dataclass(frozen=True)
class RecompressionResult:
    """Serialised archive plus provenance for one ``recompress`` call."""

    source: Path
    data: bytes
    digest: str
    mode: CompressionMode
    mime_type: str
    cache_hit: bool
    source_size: int

    @property
    def output_size(self) -> int:
        return len(self.data)

    @property
    def saved_bytes(self) -> int:
        return self.source_size - self.output_size


@dataclass
class WorkspaceReport:
    """Counters gathered while building one workspace."""

    structured: int = 0
    malformed: int = 0
    images: int = 0
    image_failures: int = 0
    nested: int = 0
    invalid_nested: int = 0

    def as_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


@dataclass
class _RunCounters:
    """Per-recompressor tallies; shared by folder-mode worker threads."""

    extractions: int = 0
    cache_hits: int = 0
    reports: Dict[str, WorkspaceReport] = field(default_factory=dict)
    _guard: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_extraction(self) -> None:
        with self._guard:
            self.extractions += 1

    def record_cache_hit(self) -> None:
        with self._guard:
            self.cache_hits += 1

    def record_report(self, digest: str, report: WorkspaceReport) -> None:
        with self._guard:
            self.reports[digest] = report


class Recompressor:
    """Drive extraction, normalisation, and repacking against a scratch store.

    Args:
        store: Scratch store holding digest-keyed workspaces.
        optimizer: Image optimiser; built from ``settings`` when omitted.
        settings: Settings tree; the cached environment defaults when omitted.
        logger: Logger for pipeline records.
    """

    def __init__(
        self,
        store: ScratchStore,
        *,
        optimizer: Optional[ImageOptimizer] = None,
        settings: Optional[DetonaterSettings] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_default_config()
        self.logger = logger or LOGGER
        if optimizer is None:
            optimizer = build_optimizer(
                self.settings.optimizer,
                long_path_threshold=self.settings.recompression.long_path_threshold,
                logger=self.logger,
            )
        self.optimizer = optimizer
        self.counters = _RunCounters()

    @property
    def _policy(self):
        return self.settings.recompression

    def digest(self, source_path: Path) -> str:
        return digest_file(Path(source_path), self._policy.digest_algorithm)

    def recompress(self, source_path: Path, is_nested: bool = False) -> bytes:
        """Return the recompressed bytes for ``source_path``.

        ``source_path`` itself is never written; persisting the result is the
        caller's job.
        """

        return self.recompress_detailed(source_path, is_nested=is_nested).data

    def recompress_detailed(self, source_path: Path, is_nested: bool = False) -> RecompressionResult:
        """Recompress ``source_path`` and return the bytes with provenance."""

        source_path = Path(source_path)
        policy = self._policy
        started = time.perf_counter()
        source_size = os.stat(long_path(source_path, policy.long_path_threshold)).st_size
        digest = self.digest(source_path)
        context = {
            "stage": "digest",
            "archive": source_path.name,
            "digest": digest,
            "nested": is_nested,
        }

        cache_hit = self._ensure_workspace(source_path, digest, context)
        workspace = self.store.workspace_path(digest)

        builder = repack_workspace(
            workspace,
            long_path_threshold=policy.long_path_threshold,
            mime_type=policy.mime_type,
            stored_suffixes=policy.archive_suffixes,
        )
        mode = CompressionMode.for_nesting(is_nested)
        data = builder.serialize(mode, level=policy.deflate_level)

        self.logger.info(
            "recompressed %s (%d -> %d bytes, %s)",
            source_path.name,
            source_size,
            len(data),
            mode.value,
            extra={
                **context,
                "stage": "repack",
                "extra_fields": {
                    "entries": len(builder),
                    "cache_hit": cache_hit,
                    "duration_ms": round((time.perf_counter() - started) * 1000.0, 2),
                },
            },
        )
        return RecompressionResult(
            source=source_path,
            data=data,
            digest=digest,
            mode=mode,
            mime_type=builder.mime_type,
            cache_hit=cache_hit,
            source_size=source_size,
        )

    def _ensure_workspace(self, source_path: Path, digest: str, context: dict) -> bool:
        """Build the workspace for ``digest`` unless it already exists.

        Returns:
            ``True`` on a cache hit.
        """

        with self.store.lock(digest):
            if self.store.exists(digest):
                self.counters.record_cache_hit()
                self.logger.info(
                    "%s was already recompressed, reusing its workspace",
                    source_path.name,
                    extra=context,
                )
                return True

            with self.store.build(digest) as staging:
                extract_archive(
                    source_path,
                    staging,
                    long_path_threshold=self._policy.long_path_threshold,
                    logger=self.logger,
                )
                self.counters.record_extraction()
                report = self._process_workspace(staging)
            self.counters.record_report(digest, report)
            self.logger.debug(
                "workspace ready",
                extra={**context, "stage": "normalize", "extra_fields": report.as_dict()},
            )
        return False

    def _process_workspace(self, workspace: Path) -> WorkspaceReport:
        """Single sorted walk handling nested archives, structured text and images."""

        policy = self._policy
        report = WorkspaceReport()
        for current, dirnames, filenames in os.walk(workspace, onerror=raise_walk_error):
            dirnames.sort()
            for filename in sorted(filenames):
                kind = classify_entry(filename, policy)
                if kind is None:
                    continue
                path = Path(current) / filename
                if kind is EntryKind.ARCHIVE:
                    report.nested += 1
                    if not self._recompress_nested(path):
                        report.invalid_nested += 1
                elif kind is EntryKind.STRUCTURED_TEXT:
                    report.structured += 1
                    if not normalize_structured_text(
                        path,
                        indent=policy.indent,
                        long_path_threshold=policy.long_path_threshold,
                        logger=self.logger,
                    ):
                        report.malformed += 1
                elif kind is EntryKind.IMAGE:
                    report.images += 1
                    result = optimize_image(
                        path,
                        self.optimizer,
                        long_path_threshold=policy.long_path_threshold,
                        logger=self.logger,
                    )
                    if not result.ok and not result.skipped:
                        report.image_failures += 1
        return report

    def _recompress_nested(self, path: Path) -> bool:
        """Replace the nested archive at ``path`` with its STORE-mode rebuild."""

        threshold = self._policy.long_path_threshold
        if not is_archive(path, long_path_threshold=threshold):
            self.logger.warning(
                "nested archive %s is not a valid archive; left unchanged",
                path.name,
                extra={"stage": "recurse", "entry": str(path)},
            )
            return False

        self.logger.info("found nested archive %s", path.name, extra={"stage": "recurse"})
        try:
            data = self.recompress(path, is_nested=True)
        except ArchiveError as exc:
            self.logger.warning(
                "nested archive %s could not be read; left unchanged: %s",
                path.name,
                exc,
                extra={"stage": "recurse", "entry": str(path)},
            )
            return False
        with preserved_mtime(path, threshold):
            with open(long_path(path, threshold), "wb") as handle:
                handle.write(data)
        return True


def recompress_file(
    source_path: Path,
    *,
    settings: Optional[DetonaterSettings] = None,
    optimize_images: bool = True,
) -> bytes:
    """Recompress a single archive with a throwaway scratch store."""

    settings = settings or get_default_config()
    scratch = settings.scratch
    store = ScratchStore.create(prefix=scratch.prefix, base_dir=scratch.base_dir)
    try:
        optimizer = None if optimize_images else NullOptimizer()
        return Recompressor(store, optimizer=optimizer, settings=settings).recompress(source_path)
    finally:
        store.cleanup()
