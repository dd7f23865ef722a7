"""CLI entrypoint to rebuild the entry index from published slots."""

from __future__ import annotations

from pathlib import Path

import typer

from tool_cache.cache_helpers import resolve_cache_root
from tool_cache.config import Settings, load_settings
from tool_cache.db import open_index_session
from tool_cache.index import rebuild_index
from tool_cache.store import DirectoryToolCache
from utils.logging import get_logger

LOGGER = get_logger(__name__)


def main(
    reset_db: bool = typer.Option(
        True,
        "--reset-db/--no-reset-db",
        help="Whether to clear existing index rows before rebuilding.",
    ),
    settings_path: Path | None = typer.Option(None, "--settings", help="Settings YAML to load."),
) -> None:
    """Rebuild the entry index from the slots visible in the cache."""

    settings: Settings = load_settings(settings_path)
    cache_root = resolve_cache_root(settings.cache.root)
    store = DirectoryToolCache.from_settings(settings)
    target = settings.index_target(cache_root)

    LOGGER.info("rebuild_index_start", extra={"cache_root": str(cache_root), "index": target, "reset_db": reset_db})
    with open_index_session(target) as session:
        total = rebuild_index(store, session, reset=reset_db)

    typer.echo(str(total))


def run() -> None:
    typer.run(main)


if __name__ == "__main__":
    run()


__all__ = ["main", "run"]
