"""Cache keys, registration requests and published entries."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from tool_cache.errors import InvalidInput

_SEMVER_RE: Final[re.Pattern[str]] = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)
_FORBIDDEN_CHARS: Final[frozenset[str]] = frozenset({"/", "\\", "\x00"})
_REQUEST_FIELDS: Final[tuple[str, ...]] = ("Source", "Name", "Version", "Architecture")


def clean_version(version: str) -> str:
    """Return ``version`` with surrounding noise removed, semver ``clean()`` style.

    ``" v1.2.3 "`` and ``"=1.2.3"`` both become ``"1.2.3"``. Strings that are not
    semantic versions once the prefix is dropped are only stripped.
    """

    text = version.strip()
    candidate = text.lstrip("=v").strip()
    if _SEMVER_RE.match(candidate):
        return candidate
    return text


def parse_semver(version: str) -> tuple[int, int, int, str] | None:
    """Return ``(major, minor, patch, prerelease)`` for a semantic version, else ``None``."""

    match = _SEMVER_RE.match(version)
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2)), int(match.group(3)), match.group(4) or ""


def _require_component(field_name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise InvalidInput(f"{field_name} must be a string, got {type(value).__name__}")

    text = value.strip()
    if not text:
        raise InvalidInput(f"{field_name} cannot be empty")
    if any(char in text for char in _FORBIDDEN_CHARS):
        raise InvalidInput(f"{field_name} must be a single path component: {value!r}")
    if text.startswith("."):
        raise InvalidInput(f"{field_name} cannot start with '.': {value!r}")
    return text


@dataclass(frozen=True)
class CacheKey:
    """Identifies one cache slot by tool name, version and architecture."""

    name: str
    version: str
    architecture: str

    @classmethod
    def create(cls, name: Any, version: Any, architecture: Any) -> "CacheKey":
        """Normalize and validate the three key fields.

        Raises:
            InvalidInput: if any field is empty or not a safe path component.
        """

        clean_name = _require_component("name", name)
        clean_ver = clean_version(_require_component("version", version))
        clean_arch = _require_component("architecture", architecture).lower()
        return cls(name=clean_name, version=clean_ver, architecture=clean_arch)

    @property
    def relative_path(self) -> Path:
        return Path(self.name) / self.version / self.architecture

    def __str__(self) -> str:
        return f"{self.name}@{self.version}/{self.architecture}"


@dataclass(frozen=True)
class CacheEntry:
    """A published cache slot."""

    key: CacheKey
    path: Path
    checksum: str | None = None
    created_at: float | None = None


@dataclass(frozen=True)
class RegistrationRequest:
    """Arguments for a single registration call."""

    source: Path
    name: str
    version: str
    architecture: str

    @classmethod
    def from_json(cls, text: str) -> "RegistrationRequest":
        """Parse a ``{"Source", "Name", "Version", "Architecture"}`` JSON object."""

        try:
            raw = json.loads(text)
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"request is not valid JSON: {exc}") from exc

        if not isinstance(raw, dict):
            raise InvalidInput("request must be a JSON object")

        values: dict[str, str] = {}
        for field_name in _REQUEST_FIELDS:
            value = raw.get(field_name)
            if not isinstance(value, str):
                raise InvalidInput(f"request field {field_name!r} must be a string")
            values[field_name] = value

        if not values["Source"].strip():
            raise InvalidInput("source cannot be empty")

        return cls(
            source=Path(values["Source"]),
            name=values["Name"],
            version=values["Version"],
            architecture=values["Architecture"],
        )

    def validate(self) -> CacheKey:
        """Return the normalized key; the source must be an existing directory.

        Nothing on disk is created or modified.
        """

        key = CacheKey.create(self.name, self.version, self.architecture)
        if not self.source.exists():
            raise InvalidInput(f"source does not exist: {self.source}")
        if not self.source.is_dir():
            raise InvalidInput(f"source is not a directory: {self.source}")
        return key


__all__ = ["CacheEntry", "CacheKey", "RegistrationRequest", "clean_version", "parse_semver"]
