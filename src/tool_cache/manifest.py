"""Cache manifest and layout format versioning."""

from __future__ import annotations

import json
import os
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

from tool_cache.config import Settings
from tool_cache.db import dispose_engine
from tool_cache.db_helpers import sqlite_path_from_target
from tool_cache.store import STAGING_DIRNAME
from utils.logging import get_logger

LOGGER = get_logger(__name__)

# Bump when the on-disk slot layout changes in a non-backwards compatible way.
CACHE_FORMAT_VERSION: int = 1

MANIFEST_FILENAME = ".manifest.json"


@dataclass
class CacheManifest:
    """Lightweight description of the cache layout and version."""

    cache_format_version: int
    created_at: float
    collision_policy: str


def _manifest_path(cache_root: Path) -> Path:
    return cache_root / MANIFEST_FILENAME


def load_cache_manifest(cache_root: Path) -> CacheManifest | None:
    """Load the manifest from the cache root if present and readable."""

    path = _manifest_path(cache_root)
    if not path.exists():
        return None

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        LOGGER.error("cache_manifest_load_error", extra={"path": str(path), "error": str(exc)})
        return None
    if not isinstance(raw, dict):
        return None

    try:
        version = int(raw.get("cache_format_version"))
    except (TypeError, ValueError):
        version = 0

    try:
        created_at = float(raw.get("created_at"))
    except (TypeError, ValueError):
        created_at = time.time()

    policy = raw.get("collision_policy")
    return CacheManifest(
        cache_format_version=version,
        created_at=created_at,
        collision_policy=policy if isinstance(policy, str) else "",
    )


def clear_derived_state(cache_root: Path, settings: Settings) -> None:
    """Remove staging leftovers and the entry index; published slots are kept."""

    staging = cache_root / STAGING_DIRNAME
    if staging.exists():
        shutil.rmtree(staging, ignore_errors=True)

    target = settings.index_target(cache_root)
    db_path = sqlite_path_from_target(target)
    if db_path is None:
        return

    dispose_engine(target)
    for suffix in ("", "-wal", "-shm"):
        path = db_path.with_name(db_path.name + suffix)
        try:
            path.unlink(missing_ok=True)
        except OSError:
            LOGGER.warning("cache_index_cleanup_failed", extra={"path": str(path)})


def write_cache_manifest(cache_root: Path, settings: Settings) -> CacheManifest:
    """Write the manifest for the current layout version atomically."""

    cache_root.mkdir(parents=True, exist_ok=True)
    manifest = CacheManifest(
        cache_format_version=CACHE_FORMAT_VERSION,
        created_at=time.time(),
        collision_policy=settings.cache.collision_policy,
    )
    payload = {
        "cache_format_version": manifest.cache_format_version,
        "created_at": manifest.created_at,
        "collision_policy": manifest.collision_policy,
    }

    path = _manifest_path(cache_root)
    tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    os.replace(tmp_path, path)
    return manifest


def ensure_cache_manifest(cache_root: Path, settings: Settings) -> CacheManifest:
    """Validate the manifest; clear derived state and rewrite on a version mismatch."""

    existing = load_cache_manifest(cache_root)

    if existing is None:
        LOGGER.info("cache_manifest_missing_create", extra={"cache_root": str(cache_root)})
        return write_cache_manifest(cache_root, settings)

    if existing.cache_format_version != CACHE_FORMAT_VERSION:
        LOGGER.info(
            "cache_manifest_mismatch_reset",
            extra={"cache_root": str(cache_root), "existing_version": existing.cache_format_version},
        )
        clear_derived_state(cache_root, settings)
        return write_cache_manifest(cache_root, settings)

    return existing


__all__ = [
    "CACHE_FORMAT_VERSION",
    "CacheManifest",
    "clear_derived_state",
    "ensure_cache_manifest",
    "load_cache_manifest",
    "write_cache_manifest",
]
