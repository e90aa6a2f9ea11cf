"""Shared pytest fixtures for the Detonater suite.

Provides a small ZIP builder, fake image optimisers that record or fail
invocations, a scratch store rooted in ``tmp_path``, and a fixture that undoes
the handler and propagation changes ``setup_logging`` makes so ``caplog`` keeps
working across tests.
"""

from __future__ import annotations

import io
import logging
import os
import struct
import zipfile
from pathlib import Path
from typing import Dict, Iterable, List, Tuple, Union

import pytest

from Detonater.logging_utils import LOGGER_NAME
from Detonater.optimizer import OptimizationResult
from Detonater.scratch import ScratchStore
from Detonater.settings import DetonaterSettings, build_settings, invalidate_default_config_cache

Entries = Union[Dict[str, bytes], Iterable[Tuple[str, bytes]]]

FIXED_DATE_TIME = (2020, 6, 1, 12, 0, 0)


def zip_bytes(entries: Entries, *, compression: int = zipfile.ZIP_DEFLATED) -> bytes:
    """Return ZIP bytes for ``entries``; names ending in ``/`` become directories."""

    items = entries.items() if isinstance(entries, dict) else entries
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=compression) as archive:
        for name, data in items:
            info = zipfile.ZipInfo(name, date_time=FIXED_DATE_TIME)
            if name.endswith("/"):
                info.external_attr = (0o40755 << 16) | 0x10
                archive.writestr(info, b"")
            else:
                info.external_attr = 0o100644 << 16
                archive.writestr(info, data, compress_type=compression)
    return buffer.getvalue()


def make_zip(path: Path, entries: Entries, **kwargs) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(zip_bytes(entries, **kwargs))
    return path


def read_zip(data: bytes) -> Dict[str, bytes]:
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        return {info.filename: archive.read(info) for info in archive.infolist()}


def corrupt_zip_bytes(name: str = "data.bin", payload: bytes = b"truncated payload") -> bytes:
    """Return a single-entry archive whose central directory overstates the entry size.

    The container still opens and passes ``zipfile.is_zipfile``; reading the
    entry runs past the end of the file.
    """

    data = bytearray(zip_bytes({name: payload}, compression=zipfile.ZIP_STORED))
    header = data.find(b"PK\x01\x02")
    data[header + 20 : header + 28] = struct.pack("<II", 50_000_000, 50_000_000)
    return bytes(data)


def deny_directory_listing(monkeypatch, dirname: str) -> None:
    """Make ``os.scandir`` raise ``PermissionError`` for directories named ``dirname``."""

    real_scandir = os.scandir

    def scandir(path="."):
        if not isinstance(path, int) and os.path.basename(os.fspath(path)) == dirname:
            raise PermissionError(13, "Permission denied", os.fspath(path))
        return real_scandir(path)

    monkeypatch.setattr(os, "scandir", scandir)


class RecordingOptimizer:
    """Optimiser fake that records paths and rewrites payloads with a marker."""

    def __init__(self, marker: bytes = b"") -> None:
        self.marker = marker
        self.calls: List[Path] = []

    def optimize(self, path: Path) -> OptimizationResult:
        self.calls.append(path)
        before = path.stat().st_size
        if self.marker:
            path.write_bytes(self.marker)
        return OptimizationResult(
            path=path, ok=True, bytes_before=before, bytes_after=path.stat().st_size
        )


class FailingOptimizer:
    """Optimiser fake reporting a failure for every image."""

    def __init__(self) -> None:
        self.calls: List[Path] = []

    def optimize(self, path: Path) -> OptimizationResult:
        self.calls.append(path)
        return OptimizationResult(path=path, ok=False, message="simulated failure")


@pytest.fixture(autouse=True)
def _reset_detonater_logging():
    invalidate_default_config_cache()
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_detonater_managed", False):
            logger.removeHandler(handler)
            if isinstance(handler, logging.FileHandler):
                handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
    invalidate_default_config_cache()


@pytest.fixture
def store(tmp_path: Path):
    scratch = ScratchStore(tmp_path / "scratch")
    yield scratch
    scratch.cleanup()


@pytest.fixture
def settings(tmp_path: Path) -> DetonaterSettings:
    return build_settings(
        {
            "output_dir": tmp_path / "out",
            "scratch": {"base_dir": tmp_path / "scratch-roots"},
        }
    )
