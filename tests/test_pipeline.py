# === NAVMAP v1 ===
# {
#   "module": "tests.test_pipeline",
#   "purpose": "End-to-end tests for the recompression orchestrator",
#   "sections": [
#     {"id": "scenario", "name": "Example Scenario", "anchor": "SCN", "kind": "tests"},
#     {"id": "cache", "name": "Cache Behaviour", "anchor": "CCH", "kind": "tests"},
#     {"id": "tolerance", "name": "Malformed Input Tolerance", "anchor": "TOL", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Recompression orchestrator tests.

Tests cover:
- The mod.json / textures/x.png / inner.jar scenario, including inner.jar held
  uncompressed inside the DEFLATE outer archive
- Digest-keyed workspace reuse across differently named copies
- Output independence from cache state
- Malformed metadata and invalid or corrupt nested archives left untouched
- Unreadable workspace directories failing the run
- Failed extractions never becoming cache hits
"""

from __future__ import annotations

import io
import logging
import shutil
import zipfile
from concurrent import futures

import pytest

from conftest import (
    RecordingOptimizer,
    corrupt_zip_bytes,
    deny_directory_listing,
    make_zip,
    read_zip,
    zip_bytes,
)
from Detonater.errors import InvalidArchiveError
from Detonater.io.archive import CompressionMode
from Detonater.pipeline import Recompressor, recompress_file
from Detonater.scratch import ScratchStore


def _scenario_archive(path):
    inner = zip_bytes(
        {
            "pack.mcmeta": b'{"pack":{"pack_format":15,"description":"inner"}}',
            "data/values.json": b'{"b":2,"a":[1,2]}',
        }
    )
    return make_zip(
        path,
        {
            "META-INF/": b"",
            "META-INF/MANIFEST.MF": b"Manifest-Version: 1.0\n",
            "mod.json": b'{"a":1}',
            "textures/x.png": b"\x89PNG original pixels",
            "inner.jar": inner,
        },
    )


# ============================================================================
# EXAMPLE SCENARIO
# ============================================================================


def test_example_scenario(tmp_path, store, settings) -> None:
    source = _scenario_archive(tmp_path / "mod.jar")
    optimizer = RecordingOptimizer(marker=b"\x89PNG optimized")
    recompressor = Recompressor(store, optimizer=optimizer, settings=settings)

    result = recompressor.recompress_detailed(source)
    outer = read_zip(result.data)

    assert result.mode is CompressionMode.DEFLATE
    assert result.mime_type == "application/java-archive"
    assert not result.cache_hit
    assert outer["mod.json"] == b'{\n  "a": 1\n}'
    assert outer["textures/x.png"] == b"\x89PNG optimized"
    assert outer["META-INF/MANIFEST.MF"] == b"Manifest-Version: 1.0\n"
    assert [path.name for path in optimizer.calls] == ["x.png"]

    inner = read_zip(outer["inner.jar"])
    assert inner["pack.mcmeta"] == (
        b'{\n  "pack": {\n    "pack_format": 15,\n    "description": "inner"\n  }\n}'
    )
    assert inner["data/values.json"] == b'{\n  "b": 2,\n  "a": [\n    1,\n    2\n  ]\n}'


def test_nested_archive_is_stored_and_outer_is_deflated(tmp_path, store, settings) -> None:
    source = _scenario_archive(tmp_path / "mod.jar")
    data = Recompressor(store, optimizer=RecordingOptimizer(), settings=settings).recompress(source)

    with zipfile.ZipFile(io.BytesIO(data)) as outer:
        assert outer.getinfo("inner.jar").compress_type == zipfile.ZIP_STORED
        for info in outer.infolist():
            if not info.is_dir() and info.filename != "inner.jar":
                assert info.compress_type == zipfile.ZIP_DEFLATED, info.filename
        inner_bytes = outer.read("inner.jar")

    with zipfile.ZipFile(io.BytesIO(inner_bytes)) as inner:
        assert {info.compress_type for info in inner.infolist()} == {zipfile.ZIP_STORED}


def test_recompress_nested_flag_selects_store(tmp_path, store, settings) -> None:
    source = make_zip(tmp_path / "lib.jar", {"a.json": b"[1,2]"})
    recompressor = Recompressor(store, optimizer=RecordingOptimizer(), settings=settings)

    result = recompressor.recompress_detailed(source, is_nested=True)

    assert result.mode is CompressionMode.STORE
    with zipfile.ZipFile(io.BytesIO(result.data)) as archive:
        assert archive.getinfo("a.json").compress_type == zipfile.ZIP_STORED


def test_source_is_never_modified(tmp_path, store, settings) -> None:
    source = _scenario_archive(tmp_path / "mod.jar")
    before = source.read_bytes()

    Recompressor(store, optimizer=RecordingOptimizer(b"x"), settings=settings).recompress(source)

    assert source.read_bytes() == before


# ============================================================================
# CACHE BEHAVIOUR
# ============================================================================


def test_identical_bytes_share_one_workspace(tmp_path, store, settings, caplog) -> None:
    first = _scenario_archive(tmp_path / "a.jar")
    second = tmp_path / "renamed-copy.jar"
    shutil.copyfile(first, second)
    recompressor = Recompressor(store, optimizer=RecordingOptimizer(), settings=settings)

    first_bytes = recompressor.recompress(first)
    extractions = recompressor.counters.extractions
    with caplog.at_level(logging.INFO, logger="Detonater"):
        second_result = recompressor.recompress_detailed(second)

    assert extractions == 2  # outer archive and inner.jar
    assert recompressor.counters.extractions == extractions
    assert recompressor.counters.cache_hits == 1
    assert second_result.cache_hit
    assert second_result.data == first_bytes
    assert any("already recompressed" in record.getMessage() for record in caplog.records)


def test_output_independent_of_cache_state(tmp_path, settings) -> None:
    source = _scenario_archive(tmp_path / "mod.jar")
    with ScratchStore(tmp_path / "cold") as cold:
        cold_recompressor = Recompressor(cold, optimizer=RecordingOptimizer(), settings=settings)
        cold_bytes = cold_recompressor.recompress(source)
    with ScratchStore(tmp_path / "warm") as warm:
        recompressor = Recompressor(warm, optimizer=RecordingOptimizer(), settings=settings)
        recompressor.recompress(source)
        warm_bytes = recompressor.recompress(source)

    assert read_zip(cold_bytes) == read_zip(warm_bytes)


def test_duplicate_nested_archives_reuse_workspace(tmp_path, store, settings) -> None:
    inner = zip_bytes({"lang/en_us.json": b'{"k":"v"}'})
    source = make_zip(tmp_path / "mod.jar", {"a/lib.jar": inner, "b/lib.jar": inner})
    recompressor = Recompressor(store, optimizer=RecordingOptimizer(), settings=settings)

    outer = read_zip(recompressor.recompress(source))

    assert outer["a/lib.jar"] == outer["b/lib.jar"]
    assert recompressor.counters.extractions == 2
    assert recompressor.counters.cache_hits == 1


def test_run_counters_tolerate_concurrent_updates(store, settings) -> None:
    counters = Recompressor(store, optimizer=RecordingOptimizer(), settings=settings).counters

    def bump(_):
        for _ in range(500):
            counters.record_extraction()
            counters.record_cache_hit()

    with futures.ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(bump, range(8)))

    assert counters.extractions == 4000
    assert counters.cache_hits == 4000


def test_failed_extraction_is_not_cached(tmp_path, store, settings) -> None:
    bogus = tmp_path / "bogus.jar"
    bogus.write_bytes(b"not a zip at all")
    recompressor = Recompressor(store, optimizer=RecordingOptimizer(), settings=settings)
    digest = recompressor.digest(bogus)

    with pytest.raises(InvalidArchiveError):
        recompressor.recompress(bogus)

    assert not store.exists(digest)
    assert list((store.root / ".staging").iterdir()) == []


# ============================================================================
# MALFORMED INPUT TOLERANCE
# ============================================================================


def test_malformed_metadata_is_kept_verbatim(tmp_path, store, settings, caplog) -> None:
    broken = b'{"a": 1,,}'
    source = make_zip(tmp_path / "mod.jar", {"broken.json": broken, "ok.json": b'{"b":true}'})
    recompressor = Recompressor(store, optimizer=RecordingOptimizer(), settings=settings)

    with caplog.at_level(logging.WARNING, logger="Detonater"):
        outer = read_zip(recompressor.recompress(source))

    assert outer["broken.json"] == broken
    assert outer["ok.json"] == b'{\n  "b": true\n}'
    assert any("broken.json" in record.getMessage() for record in caplog.records)
    report = recompressor.counters.reports[recompressor.digest(source)]
    assert report.structured == 2 and report.malformed == 1


def test_invalid_nested_archive_is_left_unchanged(tmp_path, store, settings, caplog) -> None:
    source = make_zip(tmp_path / "mod.jar", {"libs/fake.jar": b"plain text, not a zip"})
    recompressor = Recompressor(store, optimizer=RecordingOptimizer(), settings=settings)

    with caplog.at_level(logging.WARNING, logger="Detonater"):
        outer = read_zip(recompressor.recompress(source))

    assert outer["libs/fake.jar"] == b"plain text, not a zip"
    assert any("fake.jar" in record.getMessage() for record in caplog.records)


def test_corrupt_nested_archive_is_left_unchanged(tmp_path, store, settings, caplog) -> None:
    corrupt = corrupt_zip_bytes("data.bin")
    source = make_zip(tmp_path / "mod.jar", {"libs/bad.jar": corrupt, "mod.json": b'{"a":1}'})
    recompressor = Recompressor(store, optimizer=RecordingOptimizer(), settings=settings)

    with caplog.at_level(logging.WARNING, logger="Detonater"):
        outer = read_zip(recompressor.recompress(source))

    assert outer["libs/bad.jar"] == corrupt
    assert outer["mod.json"] == b'{\n  "a": 1\n}'
    assert any("bad.jar" in record.getMessage() for record in caplog.records)
    report = recompressor.counters.reports[recompressor.digest(source)]
    assert report.nested == 1 and report.invalid_nested == 1


def test_unreadable_workspace_directory_fails_the_run(
    tmp_path, store, settings, monkeypatch
) -> None:
    source = make_zip(tmp_path / "mod.jar", {"sub/f.json": b'{"a":1}', "top.json": b"{}"})
    recompressor = Recompressor(store, optimizer=RecordingOptimizer(), settings=settings)
    digest = recompressor.digest(source)
    deny_directory_listing(monkeypatch, "sub")

    with pytest.raises(PermissionError):
        recompressor.recompress(source)

    assert not store.exists(digest)


def test_recompress_file_uses_throwaway_store(tmp_path, settings) -> None:
    source = make_zip(tmp_path / "mod.jar", {"mod.json": b'{"a":1}'})

    data = recompress_file(source, settings=settings, optimize_images=False)

    assert read_zip(data)["mod.json"] == b'{\n  "a": 1\n}'
    scratch_parent = settings.scratch.base_dir
    assert scratch_parent.is_dir() and list(scratch_parent.iterdir()) == []
