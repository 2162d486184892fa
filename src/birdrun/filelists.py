# Copyright (c) Syntropy Systems
"""File lists: newline-separated example entries under ``filelists/``."""
from __future__ import annotations

from typing import TYPE_CHECKING

from birdrun.artifacts import atomic_write_text
from birdrun.errors import MissingInputError

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path


def read_list(path: Path) -> list[str]:
    """Read a file list, dropping blank lines."""
    if not path.is_file():
        msg = f"File list not found: {path}"
        raise MissingInputError(msg)
    return [line.strip() for line in path.read_text().splitlines() if line.strip()]


def write_list(path: Path, entries: Iterable[str]) -> None:
    """Write a file list atomically, one entry per line."""
    lines = [f"{entry}\n" for entry in entries]
    atomic_write_text(path, "".join(lines))


def concat_lists(out: Path, *sources: Path) -> list[str]:
    """Write the concatenation of `sources` to `out`, preserving order."""
    entries: list[str] = []
    for source in sources:
        entries.extend(read_list(source))
    write_list(out, entries)
    return entries
