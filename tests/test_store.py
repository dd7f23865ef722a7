"""Tests for the directory tool cache: layout, atomic publish and collision policies."""

from __future__ import annotations

import errno
import os
import shutil
import time
from pathlib import Path

import pytest
from filelock import FileLock

from tool_cache.errors import InvalidInput, StorageFailure
from tool_cache.store import COMPLETE_SUFFIX, DirectoryToolCache


def _write_tree(root: Path, files: dict[str, str]) -> Path:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


def _failing_copy(fail_after: int):
    copied: list[str] = []

    def _copy(src: str, dst: str) -> str:
        if len(copied) >= fail_after:
            raise OSError(errno.ENOSPC, "No space left on device", dst)
        copied.append(src)
        return shutil.copy2(src, dst)

    return _copy


def test_cache_directory_publishes_contents_and_marker(cache_root: Path, tool_source: Path) -> None:
    store = DirectoryToolCache(cache_root)

    path = store.cache_directory(tool_source, "tool", "v1.2.3", "x64")

    assert path == store.root / "tool" / "1.2.3" / "x64"
    assert (path / "bin" / "tool").read_text(encoding="utf-8").startswith("#!/bin/sh")
    assert (path / "README").exists()
    assert path.with_name("x64" + COMPLETE_SUFFIX).is_file()
    assert store.find("tool", "1.2.3", "x64") == path
    assert list(store.staging_root.iterdir()) == []


def test_cache_directory_copies_contents_not_the_directory(cache_root: Path, tool_source: Path) -> None:
    store = DirectoryToolCache(cache_root)

    path = store.cache_directory(tool_source, "tool", "1.2.3", "x64")

    assert sorted(child.name for child in path.iterdir()) == ["README", "bin"]


def test_cache_directory_preserves_symlinks(cache_root: Path, tool_source: Path) -> None:
    os.symlink("tool", tool_source / "bin" / "tool-alias")
    store = DirectoryToolCache(cache_root)

    path = store.cache_directory(tool_source, "tool", "1.2.3", "x64")

    alias = path / "bin" / "tool-alias"
    assert alias.is_symlink()
    assert os.readlink(alias) == "tool"


def test_cache_directory_leaves_source_untouched(cache_root: Path, tool_source: Path) -> None:
    before = sorted(str(p.relative_to(tool_source)) for p in tool_source.rglob("*"))

    DirectoryToolCache(cache_root).cache_directory(tool_source, "tool", "1.2.3", "x64")

    assert sorted(str(p.relative_to(tool_source)) for p in tool_source.rglob("*")) == before


def test_invalid_input_does_not_touch_storage(cache_root: Path, tmp_path: Path, tool_source: Path) -> None:
    store = DirectoryToolCache(cache_root)

    with pytest.raises(InvalidInput):
        store.cache_directory(tmp_path / "missing", "tool", "1.2.3", "x64")
    with pytest.raises(InvalidInput):
        store.cache_directory(tool_source, "tool", "", "x64")

    assert not cache_root.exists()


def test_copy_failure_leaves_no_visible_entry(cache_root: Path, tool_source: Path) -> None:
    store = DirectoryToolCache(cache_root, copy_function=_failing_copy(fail_after=1))

    with pytest.raises(StorageFailure) as excinfo:
        store.cache_directory(tool_source, "tool", "1.2.3", "x64")

    assert isinstance(excinfo.value.__cause__, OSError)
    assert store.find("tool", "1.2.3", "x64") is None
    assert not (cache_root / "tool").exists()
    assert list(store.staging_root.iterdir()) == []


def test_marker_write_failure_removes_unpublished_slot(
    cache_root: Path, tool_source: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = DirectoryToolCache(cache_root)

    def _fail(self: DirectoryToolCache, marker: Path, checksum: str) -> None:
        raise OSError(errno.EIO, "I/O error", str(marker))

    monkeypatch.setattr(DirectoryToolCache, "_write_marker", _fail)

    with pytest.raises(StorageFailure):
        store.cache_directory(tool_source, "tool", "1.2.3", "x64")

    assert store.find("tool", "1.2.3", "x64") is None
    assert not (cache_root / "tool" / "1.2.3" / "x64").exists()


def test_overwrite_failure_restores_previous_entry(
    cache_root: Path, tool_source: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = DirectoryToolCache(cache_root, collision_policy="overwrite")
    path = store.cache_directory(tool_source, "tool", "1.2.3", "x64")

    original_write = DirectoryToolCache._write_marker
    calls: list[Path] = []

    def _fail_once(self: DirectoryToolCache, marker: Path, checksum: str) -> None:
        calls.append(marker)
        if len(calls) == 1:
            raise OSError(errno.EIO, "I/O error", str(marker))
        original_write(self, marker, checksum)

    monkeypatch.setattr(DirectoryToolCache, "_write_marker", _fail_once)
    replacement = _write_tree(tmp_path / "replacement", {"bin/tool": "new\n"})

    with pytest.raises(StorageFailure):
        store.cache_directory(replacement, "tool", "1.2.3", "x64")

    assert store.find("tool", "1.2.3", "x64") == path
    assert (path / "README").exists()
    assert (path / "bin" / "tool").read_text(encoding="utf-8").startswith("#!/bin/sh")


def test_first_writer_wins_keeps_existing_contents(cache_root: Path, tool_source: Path, tmp_path: Path) -> None:
    store = DirectoryToolCache(cache_root)
    first = store.cache_directory(tool_source, "tool", "1.2.3", "x64")

    other = _write_tree(tmp_path / "other", {"bin/tool": "different\n"})
    second = store.cache_directory(other, "tool", "1.2.3", "x64")

    assert second == first
    assert (first / "README").exists()
    assert (first / "bin" / "tool").read_text(encoding="utf-8") != "different\n"


def test_overwrite_replaces_existing_contents(cache_root: Path, tool_source: Path, tmp_path: Path) -> None:
    store = DirectoryToolCache(cache_root, collision_policy="overwrite")
    first = store.cache_directory(tool_source, "tool", "1.2.3", "x64")

    other = _write_tree(tmp_path / "other", {"bin/tool": "different\n"})
    second = store.cache_directory(other, "tool", "1.2.3", "x64")

    assert second == first
    assert not (second / "README").exists()
    assert (second / "bin" / "tool").read_text(encoding="utf-8") == "different\n"
    assert [p.name for p in store.staging_root.iterdir()] == []


def test_verify_keeps_identical_and_replaces_changed(cache_root: Path, tool_source: Path, tmp_path: Path) -> None:
    store = DirectoryToolCache(cache_root, collision_policy="verify")
    path = store.cache_directory(tool_source, "tool", "1.2.3", "x64")
    inode = path.stat().st_ino

    copy = tmp_path / "copy"
    shutil.copytree(tool_source, copy)
    assert store.cache_directory(copy, "tool", "1.2.3", "x64") == path
    assert path.stat().st_ino == inode

    (copy / "README").write_text("changed\n", encoding="utf-8")
    assert store.cache_directory(copy, "tool", "1.2.3", "x64") == path
    assert (path / "README").read_text(encoding="utf-8") == "changed\n"


def test_stale_slot_without_marker_is_replaced(cache_root: Path, tool_source: Path) -> None:
    stale = cache_root / "tool" / "1.2.3" / "x64"
    _write_tree(stale, {"partial": "half\n"})
    store = DirectoryToolCache(cache_root)

    assert store.find("tool", "1.2.3", "x64") is None

    path = store.cache_directory(tool_source, "tool", "1.2.3", "x64")

    assert not (path / "partial").exists()
    assert (path / "bin" / "tool").exists()


def test_find_all_versions_orders_semver_first(cache_root: Path, tool_source: Path) -> None:
    store = DirectoryToolCache(cache_root)
    for version in ["1.10.0", "1.2.3", "nightly", "1.2.3-rc.1", "2.0.0"]:
        store.cache_directory(tool_source, "tool", version, "x64")
    store.cache_directory(tool_source, "tool", "3.0.0", "arm64")
    _write_tree(cache_root / "tool" / "4.0.0" / "x64", {"partial": "half\n"})

    assert store.find_all_versions("tool", "X64") == ["1.2.3-rc.1", "1.2.3", "1.10.0", "2.0.0", "nightly"]
    assert store.find_all_versions("tool", "arm64") == ["3.0.0"]
    assert store.find_all_versions("missing", "x64") == []


def test_iter_entries_lists_visible_slots_only(cache_root: Path, tool_source: Path) -> None:
    store = DirectoryToolCache(cache_root)
    store.cache_directory(tool_source, "tool", "1.2.3", "x64")
    store.cache_directory(tool_source, "other", "0.1.0", "arm64")
    _write_tree(cache_root / "tool" / "9.9.9" / "x64", {"partial": "half\n"})

    keys = [str(entry.key) for entry in store.iter_entries()]

    assert keys == ["other@0.1.0/arm64", "tool@1.2.3/x64"]


def test_prune_staging_removes_old_leftovers_and_incomplete_slots(cache_root: Path, tool_source: Path) -> None:
    store = DirectoryToolCache(cache_root)
    published = store.cache_directory(tool_source, "tool", "1.2.3", "x64")

    old_stage = _write_tree(store.staging_root / "stage-old", {"contents/file": "x\n"})
    fresh_stage = _write_tree(store.staging_root / "stage-fresh", {"contents/file": "x\n"})
    an_hour_ago = time.time() - 3600
    os.utime(old_stage, (an_hour_ago, an_hour_ago))
    incomplete = _write_tree(store.root / "tool" / "2.0.0" / "x64", {"partial": "half\n"})

    removed = store.prune_staging(max_age_seconds=600)

    assert set(removed) == {old_stage, incomplete}
    assert fresh_stage.exists()
    assert published.exists()


def test_unknown_collision_policy_is_rejected(cache_root: Path) -> None:
    with pytest.raises(ValueError):
        DirectoryToolCache(cache_root, collision_policy="newest")


def test_cache_directory_publishes_undecodable_file_names(cache_root: Path, tool_source: Path) -> None:
    latin1_name = os.fsdecode(b"caf\xe9")
    try:
        (tool_source / "bin" / latin1_name).write_bytes(b"menu\n")
    except (OSError, UnicodeEncodeError):
        pytest.skip("filesystem rejects non UTF-8 file names")
    store = DirectoryToolCache(cache_root)

    path = store.cache_directory(tool_source, "tool", "1.2.3", "x64")

    assert (path / "bin" / latin1_name).read_bytes() == b"menu\n"
    assert store.entry_checksum("tool", "1.2.3", "x64") is not None


def test_first_writer_wins_skips_copy_for_published_key(cache_root: Path, tool_source: Path) -> None:
    copied: list[str] = []

    def _counting_copy(src: str, dst: str) -> str:
        copied.append(src)
        return shutil.copy2(src, dst)

    store = DirectoryToolCache(cache_root, copy_function=_counting_copy)
    first = store.cache_directory(tool_source, "tool", "1.2.3", "x64")
    assert len(copied) == 2

    second = store.cache_directory(tool_source, "tool", "1.2.3", "x64")

    assert second == first
    assert len(copied) == 2
    assert not store.staging_root.exists() or list(store.staging_root.iterdir()) == []


def test_prune_staging_skips_directories_of_running_registrations(cache_root: Path, tool_source: Path) -> None:
    pruned: list[Path] = []

    def _copy_then_prune(src: str, dst: str) -> str:
        result = shutil.copy2(src, dst)
        pruned.extend(store.prune_staging(max_age_seconds=0))
        return result

    store = DirectoryToolCache(cache_root, copy_function=_copy_then_prune)

    path = store.cache_directory(tool_source, "tool", "1.2.3", "x64")

    assert pruned == []
    assert (path / "bin" / "tool").exists()
    assert (path / "README").exists()
    assert store.find("tool", "1.2.3", "x64") == path


def test_prune_staging_skips_locked_staging_directory(cache_root: Path) -> None:
    store = DirectoryToolCache(cache_root)
    busy = _write_tree(store.staging_root / "stage-busy", {"contents/file": "x\n"})
    idle = _write_tree(store.staging_root / "stage-idle", {"contents/file": "x\n"})
    an_hour_ago = time.time() - 3600
    for stage in (busy, idle):
        os.utime(stage, (an_hour_ago, an_hour_ago))

    lock_path = store._staging_lock_path(busy.name)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with FileLock(str(lock_path)):
        removed = store.prune_staging(max_age_seconds=600)

    assert removed == [idle]
    assert (busy / "contents" / "file").exists()


def test_failed_restore_keeps_previous_contents(
    cache_root: Path, tool_source: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = DirectoryToolCache(cache_root, collision_policy="overwrite")
    path = store.cache_directory(tool_source, "tool", "1.2.3", "x64")

    def _fail_marker(self: DirectoryToolCache, marker: Path, checksum: str) -> None:
        raise OSError(errno.EIO, "I/O error", str(marker))

    real_replace = os.replace

    def _replace(src, dst) -> None:
        if Path(src).name == "retired" and Path(dst) == path:
            raise OSError(errno.EIO, "I/O error", str(dst))
        real_replace(src, dst)

    monkeypatch.setattr(DirectoryToolCache, "_write_marker", _fail_marker)
    monkeypatch.setattr(os, "replace", _replace)
    replacement = _write_tree(tmp_path / "replacement", {"bin/tool": "new\n"})

    with pytest.raises(StorageFailure):
        store.cache_directory(replacement, "tool", "1.2.3", "x64")

    assert store.find("tool", "1.2.3", "x64") is None
    orphans = [child for child in store.staging_root.iterdir() if child.name.startswith("orphaned-")]
    assert len(orphans) == 1
    assert (orphans[0] / "README").read_text(encoding="utf-8") == "tool\n"
    assert (orphans[0] / "bin" / "tool").read_text(encoding="utf-8").startswith("#!/bin/sh")
