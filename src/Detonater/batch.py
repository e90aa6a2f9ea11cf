"""File and folder invocation modes.

Both modes recompress top-level archives and persist each result to the output
directory under the input's base name. Every archive is processed in
isolation: an :class:`~Detonater.errors.DetonaterError` or :class:`OSError`
raised for one input is logged and recorded in its :class:`BatchOutcome`, and
the remaining inputs are still processed.
"""

from __future__ import annotations

import logging
from concurrent import futures
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import DetonaterError
from .io.filesystem import write_bytes_atomic
from .logging_utils import get_logger
from .optimizer import ImageOptimizer
from .pipeline import Recompressor
from .scratch import ScratchStore
from .settings import DetonaterSettings

__all__ = ["BatchOutcome", "create_executor", "discover_archives", "run_batch"]

LOGGER = get_logger("batch")


@dataclass(frozen=True)
class BatchOutcome:
    """Result of recompressing one top-level archive."""

    source: Path
    output: Optional[Path] = None
    source_size: int = 0
    output_size: int = 0
    cache_hit: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def saved_bytes(self) -> int:
        return self.source_size - self.output_size if self.ok else 0


def create_executor(workers: int) -> Tuple[Optional[futures.Executor], bool]:
    """Return a thread pool for ``workers`` > 1.

    Returns:
        Tuple of (executor, needs_shutdown). ``(None, False)`` means run inline.
    """

    if workers <= 1:
        return None, False
    return futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="detonater"), True


def discover_archives(folder: Path, suffixes: Sequence[str]) -> List[Path]:
    """Return regular files directly inside ``folder`` whose name ends in ``suffixes``."""

    lowered = tuple(suffix.lower() for suffix in suffixes)
    return sorted(
        (entry for entry in folder.iterdir() if entry.is_file() and entry.name.lower().endswith(lowered)),
        key=lambda entry: entry.name,
    )


def _process_one(
    recompressor: Recompressor,
    source: Path,
    output_dir: Path,
    logger: logging.Logger,
) -> BatchOutcome:
    logger.info("optimizing %s...", source.name, extra={"stage": "cli", "archive": source.name})
    try:
        result = recompressor.recompress_detailed(source)
        destination = write_bytes_atomic(output_dir / source.name, result.data)
    except (DetonaterError, OSError) as exc:
        logger.error(
            "failed to recompress %s: %s",
            source.name,
            exc,
            exc_info=logger.isEnabledFor(logging.DEBUG),
            extra={"stage": "cli", "archive": source.name},
        )
        return BatchOutcome(source=source, error=str(exc) or exc.__class__.__name__)
    logger.info(
        "the compression of %s is done",
        source.name,
        extra={"stage": "cli", "archive": source.name},
    )
    return BatchOutcome(
        source=source,
        output=destination,
        source_size=result.source_size,
        output_size=result.output_size,
        cache_hit=result.cache_hit,
    )


def run_batch(
    sources: Iterable[Path],
    settings: DetonaterSettings,
    *,
    optimizer: Optional[ImageOptimizer] = None,
    store: Optional[ScratchStore] = None,
    logger: Optional[logging.Logger] = None,
) -> List[BatchOutcome]:
    """Recompress ``sources`` into ``settings.output_dir``.

    Args:
        sources: Top-level archives to process.
        settings: Resolved settings (output directory, workers, scratch policy).
        optimizer: Optional optimiser override.
        store: Existing scratch store; a fresh one is created (and removed
            afterwards unless ``settings.scratch.keep``) when omitted.
        logger: Logger for per-archive records.

    Returns:
        One :class:`BatchOutcome` per source, in input order.
    """

    log = logger or LOGGER
    items = list(sources)
    output_dir = settings.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)

    owns_store = store is None
    if store is None:
        store = ScratchStore.create(
            prefix=settings.scratch.prefix,
            base_dir=settings.scratch.base_dir,
            logger=log,
        )
    recompressor = Recompressor(store, optimizer=optimizer, settings=settings)

    executor, needs_shutdown = create_executor(min(settings.workers, max(len(items), 1)))
    try:
        if executor is None:
            return [_process_one(recompressor, source, output_dir, log) for source in items]
        pending = [
            executor.submit(_process_one, recompressor, source, output_dir, log) for source in items
        ]
        return [future.result() for future in pending]
    finally:
        if needs_shutdown and executor is not None:
            executor.shutdown(wait=True)
        if owns_store and not settings.scratch.keep:
            store.cleanup()
        elif owns_store:
            log.info("scratch root kept at %s", store.root, extra={"stage": "cli"})
