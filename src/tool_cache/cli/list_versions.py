"""CLI to list the cached versions of a tool."""

from __future__ import annotations

import json
from pathlib import Path

import typer

from tool_cache.config import load_settings
from tool_cache.errors import ToolCacheError
from tool_cache.store import DirectoryToolCache


def main(
    name: str = typer.Argument(..., help="Tool name."),
    architecture: str = typer.Argument(..., help="Tool architecture, e.g. x64."),
    settings_path: Path | None = typer.Option(None, "--settings", help="Settings YAML to load."),
) -> None:
    """Print the JSON list of versions published for the tool and architecture."""

    try:
        store = DirectoryToolCache.from_settings(load_settings(settings_path))
        versions = store.find_all_versions(name, architecture)
    except (ToolCacheError, ValueError) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(json.dumps(versions))


def run() -> None:
    typer.run(main)


if __name__ == "__main__":
    run()


__all__ = ["main", "run"]
