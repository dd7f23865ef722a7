"""CLI to remove abandoned staging copies and unpublished slots."""

from __future__ import annotations

from pathlib import Path

import typer

from tool_cache.config import load_settings
from tool_cache.store import DirectoryToolCache
from utils.logging import get_logger

LOGGER = get_logger(__name__)


def main(
    max_age: float | None = typer.Option(
        None,
        "--max-age",
        help="Minimum age in seconds of staging directories to remove; defaults to cache.staging_max_age.",
    ),
    settings_path: Path | None = typer.Option(None, "--settings", help="Settings YAML to load."),
) -> None:
    """Prune the tool cache."""

    settings = load_settings(settings_path)
    store = DirectoryToolCache.from_settings(settings)
    age = settings.cache.staging_max_age if max_age is None else max_age

    removed = store.prune_staging(age)
    for path in removed:
        typer.echo(str(path))
    LOGGER.info("prune_cache_complete", extra={"root": str(store.root), "removed": len(removed)})


def run() -> None:
    typer.run(main)


if __name__ == "__main__":
    run()


__all__ = ["main", "run"]
