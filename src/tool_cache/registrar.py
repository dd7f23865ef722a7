"""Tool cache registrar: validate a request, publish it, and index the entry."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Protocol, runtime_checkable

from sqlalchemy.exc import SQLAlchemyError

from tool_cache.cache_helpers import resolve_cache_root
from tool_cache.config import Settings
from tool_cache.db import open_index_session
from tool_cache.errors import InvalidInput, StorageFailure
from tool_cache.index import ToolCacheIndex
from tool_cache.keys import CacheEntry, CacheKey, RegistrationRequest
from tool_cache.manifest import ensure_cache_manifest
from tool_cache.store import DirectoryToolCache
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "registrar"})


class ToolCacheStore(Protocol):
    """Collaborator that owns the persisted copies of cached directories."""

    def cache_directory(self, source: Path | str, name: str, version: str, architecture: str) -> Path:
        ...

    def find(self, name: str, version: str, architecture: str) -> Path | None:
        ...


@runtime_checkable
class SupportsChecksum(Protocol):
    """Store that can report the content digest recorded for a published key."""

    def entry_checksum(self, name: str, version: str, architecture: str) -> str | None:
        ...


class ToolCacheRegistrar:
    """Register source directories under ``(name, version, architecture)`` keys.

    The store is injected so any collaborator honoring the publish contract can
    back the registrar. When ``index_target`` is given, every successful
    registration is also recorded in the SQLAlchemy entry index.
    """

    def __init__(
        self,
        store: ToolCacheStore,
        *,
        index_target: str | Path | None = None,
        settings: Settings | None = None,
        cache_root: Path | None = None,
    ) -> None:
        self._store = store
        self._index_target = index_target
        self._settings = settings
        self._cache_root = cache_root
        self._prepared = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "ToolCacheRegistrar":
        """Build a registrar over a :class:`DirectoryToolCache` configured by ``settings``."""

        cache_root = resolve_cache_root(settings.cache.root)
        store = DirectoryToolCache.from_settings(settings)
        return cls(
            store,
            index_target=settings.index_target(cache_root),
            settings=settings,
            cache_root=cache_root,
        )

    @property
    def store(self) -> ToolCacheStore:
        return self._store

    def _prepare(self) -> None:
        if self._prepared or self._settings is None or self._cache_root is None:
            return
        try:
            ensure_cache_manifest(self._cache_root, self._settings)
        except OSError as exc:
            raise StorageFailure(f"failed to prepare cache root {self._cache_root}: {exc}") from exc
        self._prepared = True

    def register(self, source: Path | str, name: str, version: str, architecture: str) -> CacheEntry:
        """Publish ``source`` under the key and return the resulting entry.

        Raises:
            InvalidInput: if a key field is empty or malformed, or ``source`` is
                not an existing directory. Nothing is written in that case.
            StorageFailure: if copying, publishing or indexing fails.
        """

        if isinstance(source, str) and not source.strip():
            raise InvalidInput("source cannot be empty")
        request = RegistrationRequest(source=Path(source), name=name, version=version, architecture=architecture)
        return self.register_request(request)

    def register_request(self, request: RegistrationRequest) -> CacheEntry:
        key = request.validate()
        self._prepare()

        started = time.perf_counter()
        try:
            path = Path(self._store.cache_directory(request.source, key.name, key.version, key.architecture))
        except OSError as exc:
            LOGGER.error("tool_cache_register_failed", extra={"key": str(key), "error": str(exc)})
            raise StorageFailure(f"failed to cache {key}: {exc}") from exc

        checksum = None
        if isinstance(self._store, SupportsChecksum):
            checksum = self._store.entry_checksum(key.name, key.version, key.architecture)

        entry = CacheEntry(key=key, path=path, checksum=checksum, created_at=time.time())
        if self._index_target is not None:
            entry = self._record(entry, self._index_target)

        LOGGER.info(
            "tool_cached",
            extra={
                "key": str(key),
                "source": str(request.source),
                "path": str(path),
                "elapsed_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return entry

    def _record(self, entry: CacheEntry, index_target: str | Path) -> CacheEntry:
        try:
            with open_index_session(index_target) as session:
                index = ToolCacheIndex(session)
                existing = index.get(entry.key)
                if existing is not None and existing.checksum == entry.checksum and existing.path == entry.path:
                    return existing
                return index.record(entry)
        except (OSError, SQLAlchemyError) as exc:
            LOGGER.error("tool_index_record_failed", extra={"key": str(entry.key), "error": str(exc)})
            raise StorageFailure(f"failed to index {entry.key}: {exc}") from exc

    def lookup(self, name: str, version: str, architecture: str) -> Path | None:
        """Return the published path for the key, or ``None`` when nothing is cached."""

        key = CacheKey.create(name, version, architecture)
        return self._store.find(key.name, key.version, key.architecture)


__all__ = ["SupportsChecksum", "ToolCacheRegistrar", "ToolCacheStore"]
