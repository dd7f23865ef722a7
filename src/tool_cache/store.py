"""Directory tool cache with staged copies and atomic, per-key publish."""

from __future__ import annotations

import os
import shutil
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Final

from filelock import FileLock, Timeout

from tool_cache.cache_helpers import resolve_cache_root
from tool_cache.config import COLLISION_POLICIES, Settings
from tool_cache.errors import InvalidInput, StorageFailure
from tool_cache.hasher import compute_directory_digest
from tool_cache.keys import CacheEntry, CacheKey, parse_semver
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "tool_store"})

STAGING_DIRNAME: Final[str] = ".staging"
LOCKS_DIRNAME: Final[str] = ".locks"
COMPLETE_SUFFIX: Final[str] = ".complete"

CopyFunction = Callable[[str, str], object]


def _version_sort_key(version: str) -> tuple[int, tuple[int, int, int], int, str]:
    parsed = parse_semver(version)
    if parsed is None:
        return (1, (0, 0, 0), 0, version)
    major, minor, patch, prerelease = parsed
    # Releases sort after their prereleases.
    return (0, (major, minor, patch), 0 if prerelease else 1, prerelease)


class DirectoryToolCache:
    """Filesystem-backed tool cache laid out as ``<root>/<name>/<version>/<arch>``.

    A slot is visible only once its ``<arch>.complete`` marker exists next to it.
    Registrations copy the source into ``<root>/.staging`` first and move the copy
    into place while holding a per-key file lock, so readers never observe a
    partially written slot and concurrent registrants of one key serialize.
    """

    def __init__(
        self,
        root: Path | str,
        *,
        collision_policy: str = "first_writer_wins",
        lock_timeout: float = -1.0,
        copy_function: CopyFunction = shutil.copy2,
    ) -> None:
        if collision_policy not in COLLISION_POLICIES:
            raise ValueError(f"Unsupported collision policy: {collision_policy!r}")

        self._root = resolve_cache_root(root)
        self._collision_policy = collision_policy
        self._lock_timeout = lock_timeout
        self._copy_function = copy_function

    @classmethod
    def from_settings(cls, settings: Settings) -> "DirectoryToolCache":
        return cls(
            settings.cache.root,
            collision_policy=settings.cache.collision_policy,
            lock_timeout=settings.cache.lock_timeout,
        )

    @property
    def root(self) -> Path:
        return self._root

    @property
    def collision_policy(self) -> str:
        return self._collision_policy

    @property
    def staging_root(self) -> Path:
        return self._root / STAGING_DIRNAME

    def slot_path(self, key: CacheKey) -> Path:
        return self._root / key.relative_path

    @staticmethod
    def _marker_path(slot: Path) -> Path:
        return slot.with_name(slot.name + COMPLETE_SUFFIX)

    def _lock_path(self, key: CacheKey) -> Path:
        return self._root / LOCKS_DIRNAME / key.name / key.version / f"{key.architecture}.lock"

    def _is_visible(self, slot: Path) -> bool:
        return slot.is_dir() and self._marker_path(slot).is_file()

    # Lookups never take the key lock.

    def find(self, name: str, version: str, architecture: str) -> Path | None:
        """Return the published slot for an exact key, or ``None``."""

        key = CacheKey.create(name, version, architecture)
        slot = self.slot_path(key)
        if self._is_visible(slot):
            return slot
        LOGGER.debug("tool_cache_miss", extra={"key": str(key)})
        return None

    def find_all_versions(self, name: str, architecture: str) -> list[str]:
        """Return the versions of ``name`` published for ``architecture``.

        Semantic versions come first in ascending order, followed by any other
        version strings sorted lexically.
        """

        probe = CacheKey.create(name, "0.0.0", architecture)
        tool_dir = self._root / probe.name
        if not tool_dir.is_dir():
            return []

        versions = [
            version_dir.name
            for version_dir in tool_dir.iterdir()
            if version_dir.is_dir() and self._is_visible(version_dir / probe.architecture)
        ]
        return sorted(versions, key=_version_sort_key)

    def _iter_slots(self) -> Iterator[tuple[CacheKey, Path]]:
        if not self._root.is_dir():
            return

        for name_dir in sorted(self._root.iterdir()):
            if name_dir.name.startswith(".") or not name_dir.is_dir():
                continue
            for version_dir in sorted(name_dir.iterdir()):
                if not version_dir.is_dir():
                    continue
                for arch_dir in sorted(version_dir.iterdir()):
                    if not arch_dir.is_dir():
                        continue
                    yield CacheKey(name_dir.name, version_dir.name, arch_dir.name), arch_dir

    def iter_entries(self) -> Iterator[CacheEntry]:
        """Yield every visible entry in the cache."""

        for key, slot in self._iter_slots():
            if self._is_visible(slot):
                marker = self._marker_path(slot)
                yield CacheEntry(
                    key=key,
                    path=slot,
                    checksum=self._read_marker(marker),
                    created_at=marker.stat().st_mtime,
                )

    def entry_checksum(self, name: str, version: str, architecture: str) -> str | None:
        """Return the content digest recorded when the key's slot was published."""

        slot = self.slot_path(CacheKey.create(name, version, architecture))
        if not self._is_visible(slot):
            return None
        return self._read_marker(self._marker_path(slot))

    @staticmethod
    def _read_marker(marker: Path) -> str | None:
        try:
            text = marker.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return text or None

    @contextmanager
    def _key_lock(self, key: CacheKey, timeout: float | None = None) -> Iterator[None]:
        lock_path = self._lock_path(key)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(lock_path), timeout=self._lock_timeout if timeout is None else timeout)
        with lock:
            yield

    def _staging_lock_path(self, staging_name: str) -> Path:
        return self._root / LOCKS_DIRNAME / STAGING_DIRNAME / f"{staging_name}.lock"

    @contextmanager
    def _staging_dir(self) -> Iterator[Path]:
        """Yield a fresh staging directory held under its own lock until removed.

        The lock is taken before the directory exists, so ``prune_staging`` can
        never remove a staging directory whose registrant is still running.
        """

        staging_dir = self.staging_root / f"stage-{uuid.uuid4().hex}"
        lock_path = self._staging_lock_path(staging_dir.name)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(str(lock_path), timeout=0):
                try:
                    staging_dir.mkdir(parents=True)
                    yield staging_dir
                finally:
                    shutil.rmtree(staging_dir, ignore_errors=True)
        finally:
            lock_path.unlink(missing_ok=True)

    def cache_directory(self, source: Path | str, name: str, version: str, architecture: str) -> Path:
        """Publish a copy of ``source``'s contents under the key and return the slot.

        Under ``first_writer_wins`` an already published key is returned without
        copying anything.

        Raises:
            InvalidInput: if the key is invalid or ``source`` is not a directory.
            StorageFailure: if staging, locking or publishing fails. No partial
                slot becomes visible.
        """

        key = CacheKey.create(name, version, architecture)
        source_path = Path(source)
        if not source_path.is_dir():
            raise InvalidInput(f"source is not a directory: {source_path}")

        slot = self.slot_path(key)
        if self._collision_policy == "first_writer_wins" and self._is_visible(slot):
            LOGGER.info("tool_cache_entry_reused", extra={"key": str(key), "path": str(slot)})
            return slot

        try:
            with self._staging_dir() as staging_dir:
                staged = staging_dir / "contents"
                shutil.copytree(source_path, staged, symlinks=True, copy_function=self._copy_function)
                checksum = compute_directory_digest(staged)
                with self._key_lock(key):
                    return self._publish(key, staged, checksum)
        except Timeout as exc:
            LOGGER.error("tool_cache_lock_timeout", extra={"key": str(key), "lock": str(exc.lock_file)})
            raise StorageFailure(f"timed out waiting for the cache lock of {key}") from exc
        except OSError as exc:
            LOGGER.error("tool_cache_publish_failed", extra={"key": str(key), "error": str(exc)})
            raise StorageFailure(f"failed to cache {key}: {exc}") from exc

    def _publish(self, key: CacheKey, staged: Path, checksum: str) -> Path:
        """Move ``staged`` into the key's slot; caller holds the key lock."""

        slot = self.slot_path(key)
        marker = self._marker_path(slot)
        previous_checksum: str | None = None

        if self._is_visible(slot):
            if self._collision_policy == "first_writer_wins":
                LOGGER.info("tool_cache_entry_reused", extra={"key": str(key), "path": str(slot)})
                return slot
            previous_checksum = self._read_marker(marker) or compute_directory_digest(slot)
            if self._collision_policy == "verify":
                if previous_checksum == checksum:
                    LOGGER.info("tool_cache_entry_verified", extra={"key": str(key), "path": str(slot)})
                    return slot
                LOGGER.warning("tool_cache_entry_content_changed", extra={"key": str(key), "path": str(slot)})

        # The entry is invisible from here until the new marker lands.
        marker.unlink(missing_ok=True)

        # Retired slots live in the locked staging directory, out of prune's reach.
        retired: Path | None = None
        if slot.exists() or slot.is_symlink():
            retired = staged.with_name("retired")
            os.replace(slot, retired)

        try:
            slot.parent.mkdir(parents=True, exist_ok=True)
            os.replace(staged, slot)
            self._write_marker(marker, checksum)
        except OSError:
            if slot.exists():
                shutil.rmtree(slot, ignore_errors=True)
            if retired is not None and previous_checksum is not None:
                restore, retired = retired, None
                self._restore(key, restore, slot, marker, previous_checksum)
            raise
        finally:
            if retired is not None:
                shutil.rmtree(retired, ignore_errors=True)

        LOGGER.info(
            "tool_cache_entry_published",
            extra={"key": str(key), "path": str(slot), "checksum": checksum},
        )
        return slot

    def _restore(self, key: CacheKey, retired: Path, slot: Path, marker: Path, checksum: str) -> None:
        """Put a previously published slot back after a failed replacement.

        When the restore itself fails the retired copy is moved to
        ``<root>/.staging/orphaned-<hex>`` instead of being deleted, where it
        stays until ``prune_staging`` ages it out.
        """

        try:
            os.replace(retired, slot)
            self._write_marker(marker, checksum)
        except OSError as exc:
            orphan = self.staging_root / f"orphaned-{uuid.uuid4().hex}"
            if retired.exists():
                os.replace(retired, orphan)
            LOGGER.error(
                "tool_cache_restore_failed",
                extra={"key": str(key), "orphan": str(orphan), "error": str(exc)},
            )

    def _write_marker(self, marker: Path, checksum: str) -> None:
        """Atomically write the completion marker holding the content digest."""

        tmp_path = marker.with_name(f"{marker.name}.{uuid.uuid4().hex}.tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as handle:
                handle.write(checksum)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, marker)
        finally:
            tmp_path.unlink(missing_ok=True)

    def prune_staging(self, max_age_seconds: float) -> list[Path]:
        """Remove abandoned staging directories and slots without a marker.

        Staging directories and slots whose lock is held by an in-flight
        registration are skipped. Returns the removed paths.
        """

        removed: list[Path] = []
        cutoff = time.time() - max_age_seconds

        if self.staging_root.is_dir():
            for child in sorted(self.staging_root.iterdir()):
                try:
                    if child.lstat().st_mtime > cutoff:
                        continue
                except FileNotFoundError:
                    continue
                lock_path = self._staging_lock_path(child.name)
                lock_path.parent.mkdir(parents=True, exist_ok=True)
                try:
                    with FileLock(str(lock_path), timeout=0):
                        if child.is_dir() and not child.is_symlink():
                            shutil.rmtree(child, ignore_errors=True)
                        else:
                            child.unlink(missing_ok=True)
                except Timeout:
                    LOGGER.info("tool_cache_prune_skip_in_flight", extra={"path": str(child)})
                    continue
                lock_path.unlink(missing_ok=True)
                removed.append(child)

        for key, slot in list(self._iter_slots()):
            if self._is_visible(slot):
                continue
            try:
                with self._key_lock(key, timeout=0):
                    if slot.is_dir() and not self._is_visible(slot):
                        shutil.rmtree(slot, ignore_errors=True)
                        removed.append(slot)
            except Timeout:
                LOGGER.info("tool_cache_prune_skip_locked", extra={"key": str(key)})

        LOGGER.info("tool_cache_pruned", extra={"root": str(self._root), "removed": len(removed)})
        return removed


__all__ = ["COMPLETE_SUFFIX", "DirectoryToolCache", "LOCKS_DIRNAME", "STAGING_DIRNAME"]
