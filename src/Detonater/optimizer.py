"""Pluggable lossless image optimisation.

The pipeline only depends on the :class:`ImageOptimizer` protocol: one call per
image path, in place, reporting success or failure. :class:`OxipngOptimizer`
shells out to ``oxipng``; :class:`NullOptimizer` leaves images alone (used when
optimisation is disabled). Implementations never raise for a failed image;
they return an :class:`OptimizationResult` describing what happened so the
walk over the remaining entries keeps going.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence, Tuple, runtime_checkable

from .errors import OptimizerError, OptimizerTimeout
from .io.filesystem import long_path
from .logging_utils import get_logger
from .settings import WINDOWS_MAX_PATH, OptimizerSettings

__all__ = [
    "ImageOptimizer",
    "NullOptimizer",
    "OptimizationResult",
    "OxipngOptimizer",
    "build_optimizer",
]

LOGGER = get_logger("optimizer")


@dataclass(frozen=True)
class OptimizationResult:
    """Outcome of one optimiser invocation."""

    path: Path
    ok: bool
    skipped: bool = False
    bytes_before: Optional[int] = None
    bytes_after: Optional[int] = None
    duration_ms: float = 0.0
    message: str = ""

    @property
    def saved_bytes(self) -> int:
        if self.bytes_before is None or self.bytes_after is None:
            return 0
        return self.bytes_before - self.bytes_after


@runtime_checkable
class ImageOptimizer(Protocol):
    """Optimise the image at ``path`` in place and report the outcome."""

    def optimize(self, path: Path) -> OptimizationResult: ...


class NullOptimizer:
    """Optimizer that never touches the file."""

    def optimize(self, path: Path) -> OptimizationResult:
        return OptimizationResult(path=path, ok=True, skipped=True, message="optimisation disabled")


class OxipngOptimizer:
    """Run ``oxipng`` as a subprocess with a bounded timeout.

    Args:
        binary: Executable name or absolute path.
        args: Flags placed before the target path.
        timeout_sec: Seconds before the subprocess is killed.
        long_path_threshold: Path length that triggers the long-path shim.
        windows: Override platform detection for the long-path shim.
        logger: Logger receiving availability warnings.
    """

    def __init__(
        self,
        binary: str = "oxipng",
        args: Sequence[str] = ("--opt", "max", "--strip", "safe", "--alpha"),
        *,
        timeout_sec: float = 120.0,
        long_path_threshold: int = WINDOWS_MAX_PATH,
        windows: Optional[bool] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.binary = binary
        self.args: Tuple[str, ...] = tuple(args)
        self.timeout_sec = timeout_sec
        self.long_path_threshold = long_path_threshold
        self.windows = windows
        self.logger = logger or LOGGER
        self._resolved: Optional[str] = None
        self._checked = False
        self._guard = threading.Lock()

    def command(self, path: Path) -> list[str]:
        """Return the argument vector used for ``path``."""

        executable = self._resolved or self.binary
        return [executable, *self.args, self._native(path)]

    def _native(self, path: Path) -> str:
        return long_path(path, self.long_path_threshold, windows=self.windows)

    def available(self) -> bool:
        """Return ``True`` when the binary can be found; warn once otherwise."""

        with self._guard:
            if not self._checked:
                self._checked = True
                self._resolved = shutil.which(self.binary)
                if self._resolved is None:
                    self.logger.warning(
                        "image optimiser %s not found; images will be left as is",
                        self.binary,
                        extra={"stage": "optimize"},
                    )
            return self._resolved is not None

    def run(self, path: Path) -> subprocess.CompletedProcess:
        """Execute the optimiser, raising :class:`OptimizerError` on failure."""

        command = self.command(path)
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                timeout=self.timeout_sec,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise OptimizerTimeout(
                f"{self.binary} exceeded {self.timeout_sec}s on {path.name}"
            ) from exc
        except OSError as exc:
            raise OptimizerError(f"Failed to launch {self.binary}: {exc}") from exc

        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="ignore").strip()
            message = stderr or f"{self.binary} exited with code {completed.returncode}"
            raise OptimizerError(message, returncode=completed.returncode)
        return completed

    def optimize(self, path: Path) -> OptimizationResult:
        if not self.available():
            return OptimizationResult(
                path=path, ok=False, skipped=True, message=f"{self.binary} not available"
            )

        bytes_before = os.stat(self._native(path)).st_size
        started = time.perf_counter()
        try:
            self.run(path)
        except OptimizerError as exc:
            return OptimizationResult(
                path=path,
                ok=False,
                bytes_before=bytes_before,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                message=str(exc),
            )
        return OptimizationResult(
            path=path,
            ok=True,
            bytes_before=bytes_before,
            bytes_after=os.stat(self._native(path)).st_size,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )


def build_optimizer(
    settings: OptimizerSettings,
    *,
    long_path_threshold: int = WINDOWS_MAX_PATH,
    logger: Optional[logging.Logger] = None,
) -> ImageOptimizer:
    """Return the optimiser described by ``settings``."""

    if not settings.enabled:
        return NullOptimizer()
    return OxipngOptimizer(
        settings.binary,
        settings.args,
        timeout_sec=settings.timeout_sec,
        long_path_threshold=long_path_threshold,
        logger=logger,
    )
