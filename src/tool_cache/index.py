"""Entry index persisted through SQLAlchemy."""

from __future__ import annotations

import time
from pathlib import Path

from sqlalchemy import Select, delete, select
from sqlalchemy.orm import Session

from tool_cache.db import ToolCacheEntryRecord
from tool_cache.db_helpers import dialect_insert
from tool_cache.hasher import compute_directory_digest
from tool_cache.keys import CacheEntry, CacheKey
from tool_cache.store import DirectoryToolCache
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "tool_index"})


def _record_to_entry(row: ToolCacheEntryRecord) -> CacheEntry:
    return CacheEntry(
        key=CacheKey(name=row.name, version=row.version, architecture=row.architecture),
        path=Path(row.storage_path),
        checksum=row.checksum,
        created_at=row.created_at,
    )


def _select_key(key: CacheKey) -> Select[tuple[ToolCacheEntryRecord]]:
    return select(ToolCacheEntryRecord).where(
        ToolCacheEntryRecord.name == key.name,
        ToolCacheEntryRecord.version == key.version,
        ToolCacheEntryRecord.architecture == key.architecture,
    )


class ToolCacheIndex:
    """Record and query published entries."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def record(self, entry: CacheEntry) -> CacheEntry:
        """Upsert ``entry`` keyed by name, version and architecture."""

        now = time.time()
        created_at = entry.created_at or now
        stmt = dialect_insert(self._session, ToolCacheEntryRecord).values(
            name=entry.key.name,
            version=entry.key.version,
            architecture=entry.key.architecture,
            storage_path=str(entry.path),
            checksum=entry.checksum,
            status="complete",
            created_at=created_at,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                ToolCacheEntryRecord.name,
                ToolCacheEntryRecord.version,
                ToolCacheEntryRecord.architecture,
            ],
            set_={
                "storage_path": str(entry.path),
                "checksum": entry.checksum,
                "status": "complete",
                "error_message": None,
                "updated_at": now,
            },
        )
        self._session.execute(stmt)
        self._session.commit()

        row = self._session.execute(_select_key(entry.key)).scalar_one()
        return _record_to_entry(row)

    def get(self, key: CacheKey) -> CacheEntry | None:
        row = self._session.execute(_select_key(key)).scalar_one_or_none()
        return _record_to_entry(row) if row is not None else None

    def list_entries(self, name: str | None = None) -> list[CacheEntry]:
        stmt = select(ToolCacheEntryRecord).order_by(
            ToolCacheEntryRecord.name, ToolCacheEntryRecord.version, ToolCacheEntryRecord.architecture
        )
        if name is not None:
            stmt = stmt.where(ToolCacheEntryRecord.name == name)
        return [_record_to_entry(row) for row in self._session.execute(stmt).scalars()]

    def reset(self) -> None:
        self._session.execute(delete(ToolCacheEntryRecord))
        self._session.commit()


def rebuild_index(store: DirectoryToolCache, session: Session, *, reset: bool = True) -> int:
    """Repopulate the index from the entries visible in ``store``.

    Returns the number of entries recorded.
    """

    index = ToolCacheIndex(session)
    if reset:
        index.reset()

    total = 0
    for entry in store.iter_entries():
        checksum = entry.checksum or compute_directory_digest(entry.path)
        index.record(
            CacheEntry(key=entry.key, path=entry.path, checksum=checksum, created_at=entry.created_at)
        )
        total += 1

    LOGGER.info("tool_index_rebuilt", extra={"root": str(store.root), "entries": total})
    return total


__all__ = ["ToolCacheIndex", "rebuild_index"]
