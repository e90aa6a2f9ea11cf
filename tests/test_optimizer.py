"""Tests for the oxipng subprocess wrapper.

``subprocess.run`` and ``shutil.which`` are monkeypatched so the suite never
needs the real binary; one opt-in test exercises oxipng when it is installed.
"""

from __future__ import annotations

import logging
import shutil
import struct
import subprocess
import zlib

import pytest

from Detonater.errors import OptimizerError, OptimizerTimeout
from Detonater.io.filesystem import LONG_PATH_PREFIX, long_path
from Detonater.optimizer import (
    ImageOptimizer,
    NullOptimizer,
    OxipngOptimizer,
    build_optimizer,
)
from Detonater.settings import OptimizerSettings


def _tiny_png() -> bytes:
    def chunk(kind: bytes, data: bytes) -> bytes:
        crc = zlib.crc32(kind + data) & 0xFFFFFFFF
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", crc)

    header = struct.pack(">IIBBBBB", 2, 2, 8, 2, 0, 0, 0)
    raw = b"".join(b"\x00" + b"\xff\x00\x00" * 2 for _ in range(2))
    idat = zlib.compress(raw, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IDAT", idat) + chunk(b"IEND", b"")


@pytest.fixture
def png(tmp_path):
    target = tmp_path / "x.png"
    target.write_bytes(_tiny_png())
    return target


@pytest.fixture
def found_binary(monkeypatch):
    monkeypatch.setattr(shutil, "which", lambda name: f"/usr/bin/{name}")


def test_command_line_uses_configured_args(png, found_binary) -> None:
    optimizer = OxipngOptimizer()
    assert optimizer.available()
    assert optimizer.command(png) == [
        "/usr/bin/oxipng",
        "--opt",
        "max",
        "--strip",
        "safe",
        "--alpha",
        str(png),
    ]


@pytest.mark.parametrize("windows", [True, False])
def test_command_line_applies_long_path_shim(png, found_binary, windows) -> None:
    optimizer = OxipngOptimizer(long_path_threshold=10, windows=windows)
    optimizer.available()

    target = optimizer.command(png)[-1]

    assert target.startswith(LONG_PATH_PREFIX) is windows
    assert target == long_path(png, 10, windows=windows)


def test_protocol_conformance() -> None:
    assert isinstance(OxipngOptimizer(), ImageOptimizer)
    assert isinstance(NullOptimizer(), ImageOptimizer)


def test_successful_run_reports_sizes(png, found_binary, monkeypatch) -> None:
    def fake_run(command, **kwargs):
        assert kwargs["timeout"] == 5.0
        png.write_bytes(b"\x89PNG")
        return subprocess.CompletedProcess(command, 0, b"", b"")

    monkeypatch.setattr(subprocess, "run", fake_run)

    result = OxipngOptimizer(timeout_sec=5.0).optimize(png)

    assert result.ok and not result.skipped
    assert result.bytes_after == 4
    assert result.saved_bytes == result.bytes_before - 4


def test_nonzero_exit_is_reported_not_raised(png, found_binary, monkeypatch) -> None:
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda command, **kwargs: subprocess.CompletedProcess(command, 1, b"", b"bad png"),
    )
    optimizer = OxipngOptimizer()

    with pytest.raises(OptimizerError) as excinfo:
        optimizer.run(png)
    assert excinfo.value.returncode == 1

    result = optimizer.optimize(png)
    assert not result.ok
    assert result.message == "bad png"


def test_timeout_is_reported(png, found_binary, monkeypatch) -> None:
    def fake_run(command, **kwargs):
        raise subprocess.TimeoutExpired(command, kwargs["timeout"])

    monkeypatch.setattr(subprocess, "run", fake_run)
    optimizer = OxipngOptimizer(timeout_sec=0.5)

    with pytest.raises(OptimizerTimeout):
        optimizer.run(png)
    result = optimizer.optimize(png)
    assert not result.ok and "0.5" in result.message


def test_missing_binary_warns_once(png, monkeypatch, caplog) -> None:
    monkeypatch.setattr(shutil, "which", lambda name: None)
    optimizer = OxipngOptimizer(binary="oxipng-missing")

    with caplog.at_level(logging.WARNING, logger="Detonater"):
        first = optimizer.optimize(png)
        second = optimizer.optimize(png)

    assert first.skipped and second.skipped
    assert not first.ok
    warnings = [r for r in caplog.records if "oxipng-missing" in r.getMessage()]
    assert len(warnings) == 1


def test_build_optimizer_honours_enabled_flag() -> None:
    assert isinstance(build_optimizer(OptimizerSettings(enabled=False)), NullOptimizer)
    built = build_optimizer(OptimizerSettings(binary="custom", args="-o 2", timeout_sec=9))
    assert isinstance(built, OxipngOptimizer)
    assert built.args == ("-o", "2")
    assert built.timeout_sec == 9
    assert build_optimizer(OptimizerSettings(), long_path_threshold=64).long_path_threshold == 64


@pytest.mark.skipif(shutil.which("oxipng") is None, reason="oxipng not installed")
def test_real_oxipng_shrinks_uncompressed_png(png) -> None:
    before = png.stat().st_size
    result = OxipngOptimizer().optimize(png)
    assert result.ok
    assert png.stat().st_size <= before
    assert png.read_bytes().startswith(b"\x89PNG")
