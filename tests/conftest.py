from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep runner variables and repository settings out of every test."""

    monkeypatch.delenv("RUNNER_TOOL_CACHE", raising=False)
    monkeypatch.setenv("TOOL_CACHE_SETTINGS", str(tmp_path / "no-settings.yaml"))


@pytest.fixture
def tool_source(tmp_path: Path) -> Path:
    """A ``tool-1.2.3-x64`` directory holding ``bin/tool`` and a README."""

    source = tmp_path / "tool-1.2.3-x64"
    (source / "bin").mkdir(parents=True)
    (source / "bin" / "tool").write_text("#!/bin/sh\necho tool 1.2.3\n", encoding="utf-8")
    (source / "README").write_text("tool\n", encoding="utf-8")
    return source


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    return tmp_path / "toolcache"
