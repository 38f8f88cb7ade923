#!/usr/bin/env python3
"""
Disk Manager for the QEMU VM manager

Creates, lists, renames, resizes and deletes virtual disk images in the
configured disk directory by driving ``qemu-img``.

Features:
- Format x allocation-type compatibility matrix enforced before any file is created
- Mapping of (format, type) to qemu-img creation options, with the Windows
  fallback for qcow2 full preallocation
- Allocation type inferred back from ``qemu-img info`` when listing
- Grow-only resize for the formats qemu-img can resize
- Extension-priority resolution of a VM's disk reference

Dependencies:
- qemu-img: QEMU disk image utility
"""

import math
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

import qemu_img
from errors import ConflictError, ExternalToolError, InvalidArgumentError, NotFoundError
from models import DiskInfo, ImageInfo
from utils.fs import resolve_child
from utils.locks import KeyedLocks
from validation import DISK_FORMATS, DISK_TYPES, validate_disk_spec, validate_disk_update

GiB = 1024 ** 3

# Order matters: the first existing file wins when resolving a VM's disk
RESOLVE_EXTENSIONS = ["qcow2", "img", "raw", "vmdk"]

# File extension -> qemu format name
EXTENSION_FORMATS = {
    "qcow2": "qcow2",
    "img": "raw",
    "raw": "raw",
    "vmdk": "vmdk",
    "vdi": "vdi",
    "vpc": "vpc",
    "vhd": "vpc",
}

ALLOWED_TYPES = {
    "qcow2": ("dynamic", "fixed"),
    "vmdk": ("dynamic", "fixed"),
    "raw": ("fixed",),
    "vdi": ("dynamic",),
    "vpc": ("dynamic",),
}

RESIZE_SUPPORTED_FORMATS = ["qcow2", "raw", "vmdk"]


@dataclass
class ResolvedDisk:
    """A VM disk reference resolved to a file on disk."""
    path: Path
    filename: str
    name: str
    format: str


def infer_allocation_type(info: ImageInfo) -> str:
    """Infer dynamic/fixed allocation from probed image metadata.

    qcow2 is fixed when fully preallocated. qemu-img only reports the
    preallocation mode on some releases; when it is missing an image whose
    on-disk size already covers its virtual size is taken as fixed.
    """
    fmt = info.format
    if fmt == "qcow2":
        if info.preallocation:
            return "fixed" if info.preallocation == "full" else "dynamic"
        if info.disk_size is not None and info.virtual_size and info.disk_size >= info.virtual_size:
            return "fixed"
        return "dynamic"
    if fmt == "vmdk":
        return "fixed" if info.subformat == "monolithicFlat" else "dynamic"
    if fmt == "raw":
        return "fixed"
    return "dynamic"


class DiskManager:
    """Virtual disk image management on top of qemu-img.

    Attributes:
        directory (Path): Directory holding the disk images
        img_binary (str): qemu-img executable
        is_windows (bool): Selects the Windows preallocation fallback

    Example:
        disks = DiskManager(Path("data/disks"))
        disks.create_disk("test", 10, "qcow2", "dynamic")
        disks.update_disk("test.qcow2", size=20)
    """

    def __init__(self, directory: Path, img_binary: str = qemu_img.DEFAULT_BINARY,
                 platform: Optional[str] = None):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.img_binary = img_binary
        self.is_windows = (platform or sys.platform).startswith("win")
        self._locks = KeyedLocks()

    def _locked(self, *filenames: str):
        return self._locks.hold(*filenames)

    def disk_path(self, filename: str) -> Path:
        path = resolve_child(self.directory, filename)
        if not path.is_file():
            raise NotFoundError(f'Disk "{filename}" not found.')
        return path

    def creation_options(self, fmt: str, disk_type: str) -> List[str]:
        """Map a validated (format, type) pair to qemu-img ``-o`` options."""
        if fmt == "qcow2":
            if disk_type == "fixed":
                if self.is_windows:
                    logger.warning("Full preallocation is not supported on Windows, using metadata preallocation")
                    return ["preallocation=metadata"]
                return ["preallocation=full"]
            return ["preallocation=metadata"]
        if fmt == "vmdk":
            return ["subformat=monolithicFlat"] if disk_type == "fixed" else ["subformat=streamOptimized"]
        return []

    def create_disk(self, name: str, size: int, fmt: str, disk_type: Optional[str] = None) -> Dict[str, object]:
        """Create a disk image ``<name>.<fmt>`` of ``size`` GB.

        ``disk_type`` defaults to dynamic, or to the only type a format
        supports (raw -> fixed).

        Raises:
            InvalidArgumentError: unknown format/type, or a pair outside the matrix
            ConflictError: a disk with that file name already exists
            ExternalToolError: qemu-img failed; message is its stderr
        """
        spec = {"name": name, "size": size, "format": fmt, "type": disk_type}
        validate_disk_spec({k: v for k, v in spec.items() if v is not None})
        fmt = fmt.lower()
        if fmt not in DISK_FORMATS:
            raise InvalidArgumentError(f"Unsupported disk format '{fmt}'. Supported formats: {', '.join(DISK_FORMATS)}")
        allowed = ALLOWED_TYPES[fmt]
        if disk_type is None:
            disk_type = "dynamic" if "dynamic" in allowed else allowed[0]
        disk_type = disk_type.lower()
        if disk_type not in DISK_TYPES:
            raise InvalidArgumentError(f"Unsupported disk type '{disk_type}'. Supported types: {', '.join(DISK_TYPES)}")
        if disk_type not in allowed:
            raise InvalidArgumentError(
                f"'{fmt}' format does not support {disk_type} disks. Supported: {', '.join(allowed)}")

        filename = f"{name}.{fmt}"
        path = resolve_child(self.directory, filename)
        with self._locked(filename):
            if path.exists():
                raise ConflictError(f'A disk named "{filename}" already exists.')
            qemu_img.create(path, fmt, size_gb=int(size), options=self.creation_options(fmt, disk_type),
                            binary=self.img_binary)

        logger.success("Disk created", disk=filename, size_gb=size, type=disk_type)
        return {"name": name, "filename": filename, "size": int(size), "format": fmt, "type": disk_type,
                "message": f'Disk "{filename}" created successfully'}

    def disk_info(self, filename: str) -> DiskInfo:
        path = self.disk_path(filename)
        info = qemu_img.info(path, binary=self.img_binary)
        return DiskInfo(
            name=path.stem,
            filename=path.name,
            size=round(info.virtual_size / GiB),
            format=info.format,
            type=infer_allocation_type(info),
        )

    def list_disks(self) -> List[DiskInfo]:
        """Probe every image in the disk directory; unreadable files are skipped."""
        disks = []
        for path in sorted(self.directory.iterdir()):
            if path.name.startswith(".") or not path.is_file():
                continue
            try:
                disks.append(self.disk_info(path.name))
            except (ExternalToolError, NotFoundError) as e:
                logger.warning("Failed to read disk info, skipping", disk=path.name, error=str(e))
        return disks

    def delete_disk(self, filename: str) -> Dict[str, str]:
        with self._locked(filename):
            path = self.disk_path(filename)
            try:
                path.unlink()
            except FileNotFoundError:
                raise NotFoundError(f'Disk "{filename}" not found.')
        logger.info("Disk deleted", disk=filename)
        return {"message": f'Disk "{filename}" deleted successfully.'}

    def update_disk(self, filename: str, name: Optional[str] = None, size: Optional[int] = None) -> Dict[str, object]:
        """Rename and/or grow a disk.

        Every check (rename target free, format resizable, size strictly
        larger) runs before anything is modified, so a rejected request leaves
        the disk untouched.

        Raises:
            InvalidArgumentError: nothing to do, unsupported resize, shrink attempt
            NotFoundError: the disk does not exist
            ConflictError: the rename target already exists
        """
        if name is None and size is None:
            raise InvalidArgumentError("You must provide at least a new name or new size.")
        validate_disk_update({"name": name, "size": size})

        old_path = self.disk_path(filename)
        ext = old_path.suffix.lstrip(".").lower()
        new_filename = f"{name}.{ext}" if name and ext else (name or filename)
        rename = name is not None and new_filename != filename
        new_path = resolve_child(self.directory, new_filename)

        with self._locked(filename, new_filename):
            old_path = self.disk_path(filename)
            if rename and new_path.exists():
                raise ConflictError(f'A disk named "{new_filename}" already exists.')

            info = None
            if size is not None:
                fmt = EXTENSION_FORMATS.get(ext, ext)
                if fmt not in RESIZE_SUPPORTED_FORMATS:
                    raise InvalidArgumentError(
                        f'Resize not supported for format "{ext}". '
                        f'Supported formats: {", ".join(RESIZE_SUPPORTED_FORMATS)}')
                info = qemu_img.info(old_path, binary=self.img_binary)
                if int(size) * GiB <= info.virtual_size:
                    current_gb = math.ceil(info.virtual_size / GiB)
                    raise InvalidArgumentError(f"New size must be greater than current size ({current_gb}G).")

            # Resize under the old name so a tool failure leaves the file where it was
            result: Dict[str, object] = {"filename": new_filename}
            if info is not None:
                qemu_img.resize(old_path, int(size), fmt=info.format, binary=self.img_binary)
                current_gb = math.ceil(info.virtual_size / GiB)
                logger.info("Disk resized", disk=filename, from_gb=current_gb, to_gb=size)

            if rename:
                old_path.rename(new_path)
                logger.info("Disk renamed", disk=filename, new_name=new_filename)

            if info is not None:
                result["size"] = int(size)
                result["message"] = f'Disk "{new_filename}" resized from {current_gb}G to {size}G.'
            else:
                result["message"] = f'Disk "{filename}" successfully renamed to "{new_filename}".'
        return result

    def resolve_vm_disk(self, disk_name: str) -> ResolvedDisk:
        """Find the image a VM refers to by trying qcow2, img, raw, vmdk in turn.

        Raises:
            NotFoundError: no candidate file exists
        """
        for ext in RESOLVE_EXTENSIONS:
            candidate = disk_name if disk_name.endswith(f".{ext}") else f"{disk_name}.{ext}"
            path = resolve_child(self.directory, candidate)
            if path.is_file():
                return ResolvedDisk(path=path, filename=candidate,
                                    name=candidate[:-(len(ext) + 1)], format=EXTENSION_FORMATS[ext])
        raise NotFoundError(f'Disk file "{disk_name}" not found with supported extensions')

    def virtual_size(self, path: Path) -> int:
        return qemu_img.info(path, binary=self.img_binary).virtual_size
