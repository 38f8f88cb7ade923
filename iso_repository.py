"""
ISO Repository for installation media

Stores ``.iso`` files in a single directory. Uploads arrive as raw bytes, as a
file-like stream (multipart uploads) or base64 text; all three are written to
a temporary file next to the target and moved into place, so a listing never
shows a half-written image. Uploading a name that already exists replaces it.
"""

import base64
import binascii
import io
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, List

from loguru import logger

from errors import InvalidArgumentError, NotFoundError
from models import IsoInfo
from utils.fs import atomic_write_stream, resolve_child

MiB = 1024 * 1024


def format_size(size_bytes: int) -> str:
    return f"{size_bytes / MiB:.2f} MB"


def format_mtime(mtime: float) -> str:
    stamp = datetime.fromtimestamp(mtime, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class IsoRepository:
    """Directory of ISO images.

    Example:
        isos = IsoRepository(Path("data/iso"))
        isos.save_iso("alpine.iso", data)
        [iso.name for iso in isos.list_isos()]
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _target(self, filename: str) -> Path:
        path = resolve_child(self.directory, filename)
        if not filename.lower().endswith(".iso"):
            raise InvalidArgumentError(f'"{filename}" is not an ISO file (expected a .iso extension)')
        return path

    def iso_path(self, filename: str) -> Path:
        path = self._target(filename)
        if not path.is_file():
            raise NotFoundError(f'ISO "{filename}" not found')
        return path

    def list_isos(self) -> List[IsoInfo]:
        isos = []
        for path in sorted(self.directory.iterdir()):
            if not path.is_file() or not path.name.lower().endswith(".iso") or path.name.startswith("."):
                continue
            try:
                st = path.stat()
            except FileNotFoundError:
                # Deleted between iterdir and stat
                continue
            isos.append(IsoInfo(name=path.name, size=format_size(st.st_size),
                                last_modified=format_mtime(st.st_mtime)))
        return isos

    def save_iso_stream(self, filename: str, source: BinaryIO) -> IsoInfo:
        """Write ``source`` to ``<dir>/<filename>``, replacing any existing file."""
        path = self._target(filename)
        existed = path.exists()
        written = atomic_write_stream(path, source)
        logger.info("ISO uploaded", iso=filename, size_bytes=written, replaced=existed)
        st = path.stat()
        return IsoInfo(name=filename, size=format_size(st.st_size), last_modified=format_mtime(st.st_mtime))

    def save_iso(self, filename: str, data: bytes) -> IsoInfo:
        return self.save_iso_stream(filename, io.BytesIO(data))

    def save_iso_base64(self, filename: str, content: str) -> IsoInfo:
        """Decode base64 ``content`` and store it.

        Raises:
            InvalidArgumentError: name missing, not .iso, or content not valid base64
        """
        if not filename or content is None:
            raise InvalidArgumentError("Both name and content are required")
        try:
            data = base64.b64decode(content, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidArgumentError(f"ISO content is not valid base64: {e}")
        return self.save_iso(filename, data)

    def delete_iso(self, filename: str) -> None:
        path = self.iso_path(filename)
        try:
            path.unlink()
        except FileNotFoundError:
            raise NotFoundError(f'ISO "{filename}" not found')
        logger.info("ISO deleted", iso=filename)
