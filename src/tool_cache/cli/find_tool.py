"""CLI to look up a cached tool directory by exact key."""

from __future__ import annotations

import json
from pathlib import Path

import typer

from tool_cache.config import load_settings
from tool_cache.errors import ToolCacheError
from tool_cache.store import DirectoryToolCache


def main(
    name: str = typer.Argument(..., help="Tool name."),
    version: str = typer.Argument(..., help="Exact tool version."),
    architecture: str = typer.Argument(..., help="Tool architecture, e.g. x64."),
    settings_path: Path | None = typer.Option(None, "--settings", help="Settings YAML to load."),
) -> None:
    """Print ``{"Path": ...}`` for a published entry; exit 1 when it is not cached."""

    try:
        store = DirectoryToolCache.from_settings(load_settings(settings_path))
        path = store.find(name, version, architecture)
    except (ToolCacheError, ValueError) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc

    if path is None:
        typer.echo(f"{name} {version} {architecture} is not cached", err=True)
        raise typer.Exit(code=1)

    typer.echo(json.dumps({"Path": str(path)}, separators=(",", ":")))


def run() -> None:
    typer.run(main)


if __name__ == "__main__":
    run()


__all__ = ["main", "run"]
