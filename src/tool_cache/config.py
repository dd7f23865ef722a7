"""Configuration loader and typed settings for the tool cache."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

import yaml

COLLISION_POLICIES: Final[frozenset[str]] = frozenset({"first_writer_wins", "overwrite", "verify"})
DEFAULT_CACHE_ROOT: Final[str] = "~/.cache/tool-cache"

SETTINGS_ENV: Final[str] = "TOOL_CACHE_SETTINGS"
# Same variable the GitHub Actions runner exports for its hosted tool cache.
CACHE_ROOT_ENV: Final[str] = "RUNNER_TOOL_CACHE"


@dataclass
class CacheConfig:
    """Location and publish behavior of the directory tool cache."""

    root: str = DEFAULT_CACHE_ROOT
    collision_policy: str = "first_writer_wins"
    lock_timeout: float = -1.0
    staging_max_age: float = 24 * 60 * 60


@dataclass
class DatabaseConfig:
    """Entry index database target; ``None`` means ``<cache root>/.index/index.db``."""

    index_url: str | None = None


@dataclass
class Settings:
    """Top-level application settings."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    databases: DatabaseConfig = field(default_factory=DatabaseConfig)

    def index_target(self, cache_root: Path) -> str:
        """Return the index database target for ``cache_root``."""

        if self.databases.index_url:
            return self.databases.index_url
        return str(cache_root / ".index" / "index.db")


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover - installed at filesystem root
        return module_path.parent


def _build_default_settings_paths() -> list[Path]:
    """Return candidate settings paths ordered by preference."""

    cwd_candidate = (Path.cwd() / "config" / "settings.yaml").resolve()
    repo_candidate = (_project_root() / "config" / "settings.yaml").resolve()

    candidates: list[Path] = []
    for candidate in (cwd_candidate, repo_candidate):
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv(SETTINGS_ENV)
    if env_override:
        return Path(env_override).expanduser().resolve()

    candidates = _build_default_settings_paths()
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load settings from a YAML file, falling back to defaults.

    A missing or malformed file yields default settings. ``RUNNER_TOOL_CACHE``
    overrides ``cache.root`` whenever it is set.

    Raises:
        ValueError: if ``cache.collision_policy`` names an unknown policy.
    """

    path = _resolve_settings_path(settings_path)
    settings = Settings()

    raw: Any = {}
    if path.exists() and path.is_file():
        with path.open("r", encoding="utf-8") as fp:
            raw = yaml.safe_load(fp) or {}
    if not isinstance(raw, dict):
        raw = {}

    cache_raw = _as_dict(raw.get("cache"))
    cache_cfg = settings.cache
    if isinstance(cache_raw.get("root"), str) and cache_raw["root"].strip():
        cache_cfg.root = cache_raw["root"]
    if isinstance(cache_raw.get("collision_policy"), str):
        policy = cache_raw["collision_policy"].strip().lower()
        if policy not in COLLISION_POLICIES:
            raise ValueError(f"Unsupported collision policy: {policy!r}")
        cache_cfg.collision_policy = policy
    if _is_number(cache_raw.get("lock_timeout")):
        cache_cfg.lock_timeout = float(cache_raw["lock_timeout"])
    if _is_number(cache_raw.get("staging_max_age")):
        cache_cfg.staging_max_age = float(cache_raw["staging_max_age"])

    databases_raw = _as_dict(raw.get("databases"))
    if isinstance(databases_raw.get("index_url"), str) and databases_raw["index_url"].strip():
        settings.databases.index_url = databases_raw["index_url"]

    env_root = os.getenv(CACHE_ROOT_ENV)
    if env_root and env_root.strip():
        cache_cfg.root = env_root

    return settings


__all__ = [
    "CACHE_ROOT_ENV",
    "COLLISION_POLICIES",
    "CacheConfig",
    "DatabaseConfig",
    "SETTINGS_ENV",
    "Settings",
    "load_settings",
]
