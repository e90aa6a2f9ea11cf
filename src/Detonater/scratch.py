# === NAVMAP v1 ===
# {
#   "module": "Detonater.scratch",
#   "purpose": "Digest-keyed extraction workspaces with atomic completion and per-digest locks",
#   "sections": [
#     {"id": "scratchstore", "name": "ScratchStore", "anchor": "class-scratchstore", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Process-scoped scratch store for extracted archives.

Layout under the scratch root::

    <root>/<digest>/                  completed workspace (immutable cache entry)
    <root>/.staging/<digest>-<rand>/  workspace under construction
    <root>/.locks/<digest>.lock       per-digest FileLock

A workspace only appears under its digest name once extraction, nested
recursion and normalisation have all succeeded: :meth:`ScratchStore.build`
hands out a staging directory and renames it into place on success. A failure
removes the staging directory, so a crash can never leave a half-built
workspace that later calls would mistake for a cache hit.

Locks are implemented with :mod:`filelock`, so concurrent folder-mode workers
handling archives with identical bytes serialise on the digest instead of
racing on workspace creation. Distinct digests never contend.
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Iterator, Optional

from filelock import FileLock

from .errors import WorkspaceError
from .logging_utils import get_logger

__all__ = ["ScratchStore"]

LOGGER = get_logger("scratch")
logging.getLogger("filelock").setLevel(logging.INFO)

_STAGING_DIR_NAME = ".staging"
_LOCK_DIR_NAME = ".locks"
_DIGEST_PATTERN = re.compile(r"^[0-9a-f]{8,256}$")


class ScratchStore:
    """Digest-keyed workspaces rooted in a single temporary directory."""

    def __init__(self, root: Path, *, logger: Optional[logging.Logger] = None) -> None:
        self.root = Path(root)
        self.logger = logger or LOGGER
        self._closed = False
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / _STAGING_DIR_NAME).mkdir(exist_ok=True)
        (self.root / _LOCK_DIR_NAME).mkdir(exist_ok=True)

    @classmethod
    def create(
        cls,
        *,
        prefix: str = "detonater_",
        base_dir: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "ScratchStore":
        """Create a uniquely named scratch root and log where it lives."""

        if base_dir is not None:
            Path(base_dir).mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix=prefix, dir=base_dir)).resolve()
        store = cls(root, logger=logger)
        store.logger.info("scratch root created at %s", root, extra={"stage": "scratch"})
        return store

    def __enter__(self) -> "ScratchStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cleanup()

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_digest(self, digest: str) -> str:
        if self._closed:
            raise WorkspaceError(f"Scratch store {self.root} has been cleaned up")
        if not _DIGEST_PATTERN.match(digest):
            raise WorkspaceError(f"Invalid digest for workspace naming: {digest!r}")
        return digest

    def workspace_path(self, digest: str) -> Path:
        """Return the (possibly not yet existing) workspace for ``digest``."""

        return self.root / self._check_digest(digest)

    def exists(self, digest: str) -> bool:
        """Return ``True`` when a completed workspace exists for ``digest``."""

        return self.workspace_path(digest).is_dir()

    def lock(self, digest: str) -> FileLock:
        """Return the inter-process lock guarding ``digest``'s workspace."""

        self._check_digest(digest)
        return FileLock(str(self.root / _LOCK_DIR_NAME / f"{digest}.lock"))

    @contextlib.contextmanager
    def build(self, digest: str) -> Iterator[Path]:
        """Yield a staging directory that becomes ``digest``'s workspace on success.

        Raises:
            WorkspaceError: If a completed workspace already exists.
        """

        final_path = self.workspace_path(digest)
        if final_path.exists():
            raise WorkspaceError(f"Workspace already exists for digest {digest}")

        staging = self.root / _STAGING_DIR_NAME / f"{digest}-{uuid.uuid4().hex[:8]}"
        staging.mkdir(parents=True)
        try:
            yield staging
            os.replace(staging, final_path)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        self.logger.debug(
            "workspace completed",
            extra={"stage": "scratch", "digest": digest},
        )

    def cleanup(self) -> None:
        """Remove the scratch root and everything beneath it."""

        if self._closed:
            return
        self._closed = True
        shutil.rmtree(self.root, ignore_errors=True)
        self.logger.debug("scratch root removed", extra={"stage": "scratch"})
