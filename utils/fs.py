"""Filesystem helpers shared by the managers.

resolve_child keeps user-supplied file names inside their managed directory.
atomic_write_* write through a temporary file in the target directory and
``os.replace`` it into place so readers never observe a half-written file.
"""
import os
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO, Union

from errors import InvalidArgumentError


def resolve_child(directory: Union[str, Path], filename: str) -> Path:
    """Return ``directory / filename`` after rejecting anything but a plain name."""
    if not filename or filename in (".", ".."):
        raise InvalidArgumentError("A file name is required")
    if "/" in filename or "\\" in filename or "\x00" in filename:
        raise InvalidArgumentError(f"Invalid file name: {filename!r}")
    return Path(directory) / filename


def atomic_write_text(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    td = tempfile.NamedTemporaryFile('w', delete=False, dir=str(path.parent),
                                     prefix=f".{path.name}.", suffix=".tmp")
    try:
        with td:
            td.write(data)
            td.flush()
            os.fsync(td.fileno())
        os.replace(td.name, str(path))
    finally:
        if os.path.exists(td.name):
            os.remove(td.name)


def atomic_write_stream(path: Path, source: BinaryIO) -> int:
    """Copy a binary stream into ``path`` atomically; returns bytes written."""
    path.parent.mkdir(parents=True, exist_ok=True)
    td = tempfile.NamedTemporaryFile('wb', delete=False, dir=str(path.parent),
                                     prefix=f".{path.name}.", suffix=".tmp")
    try:
        with td:
            shutil.copyfileobj(source, td, length=1024 * 1024)
            written = td.tell()
        os.replace(td.name, str(path))
    finally:
        if os.path.exists(td.name):
            os.remove(td.name)
    return written
