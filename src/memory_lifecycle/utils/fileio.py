"""Atomic file helpers shared by the record store and the backup manager."""

import contextlib
import os
import shutil
import tempfile
from collections.abc import Callable
from pathlib import Path


def _replace_atomically(path: Path, fill: Callable[[str], None]) -> None:
    """
    Produce ``path`` via a sibling temp file so readers see either the old or
    the new file.

    ``fill`` writes the temp file by name; it is then fsynced and renamed over
    the target.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    os.close(fd)
    try:
        fill(tmp_name)
        with open(tmp_name, "rb+") as fh:
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


def atomic_write_text(path: Path, data: str) -> None:
    """Write ``data`` as UTF-8 to ``path`` atomically."""

    def fill(tmp_name: str) -> None:
        with open(tmp_name, "w", encoding="utf-8") as fh:
            fh.write(data)

    _replace_atomically(path, fill)


def atomic_copy(source: Path, target: Path) -> None:
    """Copy the bytes of ``source`` over ``target`` atomically."""
    _replace_atomically(target, lambda tmp_name: shutil.copyfile(source, tmp_name))


def read_text_or_none(path: Path) -> str | None:
    """Read a UTF-8 file, returning None when it does not exist."""
    try:
        return path.read_bytes().decode("utf-8")
    except FileNotFoundError:
        return None
