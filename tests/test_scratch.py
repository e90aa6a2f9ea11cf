"""Scratch store tests: atomic publish, failure cleanup, digest validation."""

from __future__ import annotations

import hashlib

import pytest
from filelock import FileLock

from Detonater.errors import WorkspaceError
from Detonater.scratch import ScratchStore

DIGEST = hashlib.sha256(b"archive").hexdigest()


def test_workspace_path_is_deterministic(store) -> None:
    assert store.workspace_path(DIGEST) == store.root / DIGEST
    assert store.workspace_path(DIGEST) == store.workspace_path(DIGEST)
    assert not store.exists(DIGEST)


def test_build_publishes_on_success(store) -> None:
    with store.build(DIGEST) as staging:
        assert not store.exists(DIGEST)
        (staging / "mod.json").write_text("{}")

    assert store.exists(DIGEST)
    assert (store.workspace_path(DIGEST) / "mod.json").read_text() == "{}"
    assert list((store.root / ".staging").iterdir()) == []


def test_build_removes_staging_on_failure(store) -> None:
    with pytest.raises(OSError):
        with store.build(DIGEST) as staging:
            (staging / "partial.txt").write_text("half")
            raise OSError("disk full")

    assert not store.exists(DIGEST)
    assert list((store.root / ".staging").iterdir()) == []


def test_build_refuses_existing_workspace(store) -> None:
    with store.build(DIGEST):
        pass
    with pytest.raises(WorkspaceError):
        with store.build(DIGEST):
            pass


@pytest.mark.parametrize("digest", ["", "../escape", "ABCDEF0123", "abc"])
def test_invalid_digest_rejected(store, digest) -> None:
    with pytest.raises(WorkspaceError):
        store.workspace_path(digest)


def test_lock_is_per_digest(store) -> None:
    lock = store.lock(DIGEST)
    assert isinstance(lock, FileLock)
    assert lock.lock_file.endswith(f"{DIGEST}.lock")
    with lock:
        assert lock.is_locked


def test_create_and_cleanup(tmp_path, caplog) -> None:
    with caplog.at_level("INFO", logger="Detonater"):
        created = ScratchStore.create(prefix="detonater_test_", base_dir=tmp_path / "base")

    assert created.root.is_dir()
    assert created.root.name.startswith("detonater_test_")
    assert any(str(created.root) in record.getMessage() for record in caplog.records)

    created.cleanup()
    assert created.closed
    assert not created.root.exists()
    with pytest.raises(WorkspaceError):
        created.exists(DIGEST)


def test_context_manager_cleans_up(tmp_path) -> None:
    with ScratchStore(tmp_path / "scratch") as scratch:
        root = scratch.root
        assert root.is_dir()
    assert not root.exists()
