"""Error taxonomy for tool cache registration."""

from __future__ import annotations


class ToolCacheError(Exception):
    """Base class for tool cache failures."""


class InvalidInput(ToolCacheError, ValueError):
    """A request field is missing or malformed, or the source is not a directory."""


class StorageFailure(ToolCacheError):
    """Staging, copying, publishing or indexing a cache entry failed."""


__all__ = ["InvalidInput", "StorageFailure", "ToolCacheError"]
