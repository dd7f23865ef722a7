"""Content digests for cached tool directories."""

from __future__ import annotations

import os
from pathlib import Path

import xxhash

from utils.logging import get_logger

LOGGER = get_logger(__name__)


def compute_directory_digest(root: Path, chunk_size: int = 1 << 20) -> str:
    """Compute a stable digest of a directory tree.

    The digest covers every entry's relative POSIX path, its kind, and either the
    file bytes or the symlink target. Entries are visited in sorted order so the
    result does not depend on filesystem iteration order. Modification times and
    permissions are ignored.

    Args:
        root: Directory whose contents should be hashed.
        chunk_size: Size of the read buffer in bytes.

    Returns:
        Digest as a 16-character lowercase hexadecimal string.
    """

    hasher = xxhash.xxh64()

    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames.sort()
        base = Path(dirpath)
        for name in sorted(dirnames + filenames):
            entry = base / name
            relative = entry.relative_to(root).as_posix()

            if entry.is_symlink():
                hasher.update(b"L:" + os.fsencode(relative) + b"\x00" + os.fsencode(os.readlink(entry)) + b"\x00")
            elif entry.is_dir():
                hasher.update(b"D:" + os.fsencode(relative) + b"\x00")
            else:
                hasher.update(b"F:" + os.fsencode(relative) + b"\x00")
                with entry.open("rb") as handle:
                    for chunk in iter(lambda: handle.read(chunk_size), b""):
                        hasher.update(chunk)
                hasher.update(b"\x00")

    digest = f"{hasher.intdigest():016x}"
    LOGGER.debug("directory_digest_computed", extra={"root": str(root), "digest": digest})
    return digest


__all__ = ["compute_directory_digest"]
