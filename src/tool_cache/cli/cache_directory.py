"""CLI bridge: cache a directory from a JSON request and print its path.

Usage::

    cache_directory '{"Source": "...", "Name": "...", "Version": "...", "Architecture": "..."}' TOKEN

On success stdout receives two lines, ``TOKEN`` followed by ``{"Path":"..."}``.
On failure the error is written to stderr and the exit status is 1.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer

from tool_cache.config import load_settings
from tool_cache.errors import ToolCacheError
from tool_cache.keys import RegistrationRequest
from tool_cache.registrar import ToolCacheRegistrar
from utils.logging import get_logger

LOGGER = get_logger(__name__)


def main(
    request_json: str = typer.Argument(
        ...,
        help='JSON object with "Source", "Name", "Version" and "Architecture" string fields.',
    ),
    echo_token: str = typer.Argument(
        "",
        help="Token printed verbatim on the first stdout line before the result.",
    ),
    settings_path: Path | None = typer.Option(
        None,
        "--settings",
        help="Settings YAML; defaults to TOOL_CACHE_SETTINGS or config/settings.yaml.",
    ),
) -> None:
    """Cache a source directory under a name/version/architecture key."""

    try:
        request = RegistrationRequest.from_json(request_json)
        registrar = ToolCacheRegistrar.from_settings(load_settings(settings_path))
        entry = registrar.register_request(request)
    except (ToolCacheError, ValueError) as exc:
        LOGGER.error("cache_directory_failed", extra={"error": str(exc)})
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(echo_token)
    typer.echo(json.dumps({"Path": str(entry.path)}, separators=(",", ":")))


def run() -> None:
    typer.run(main)


if __name__ == "__main__":
    run()


__all__ = ["main", "run"]
