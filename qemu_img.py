"""Thin client for the ``qemu-img`` binary.

Every call is synchronous and blocks until the tool exits. A non-zero exit
status, or a binary that cannot be executed, is raised as ExternalToolError
carrying the tool's diagnostic text. ``info`` parses the human-readable output
rather than ``--output=json`` because the fields we need (preallocation,
vmdk create type) are only reported there by older releases.
"""
import re
import subprocess
from pathlib import Path
from typing import List, Optional, Union

from loguru import logger

from errors import ExternalToolError
from models import ImageInfo

DEFAULT_BINARY = "qemu-img"

_VIRTUAL_SIZE_RE = re.compile(r"virtual size:.*\((\d+) bytes\)")
_FORMAT_RE = re.compile(r"file format: (\w+)")
_DISK_SIZE_RE = re.compile(r"disk size: ([\d.]+)\s*([KMGTPE]?i?B?)", re.IGNORECASE)
_PREALLOC_RE = re.compile(r"preallocation: (\w+)")
_SUBFORMAT_RE = re.compile(r"(?:subformat|create type): (\w+)")
_BACKING_RE = re.compile(r"backing file: (\S+)")

_UNITS = {"": 1, "B": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3,
          "T": 1024 ** 4, "P": 1024 ** 5, "E": 1024 ** 6}


def run(args: List[str], binary: str = DEFAULT_BINARY) -> str:
    """Run ``binary *args`` and return its stdout."""
    cmd = [binary, *args]
    logger.debug("Running image tool", command=" ".join(cmd))
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as e:
        raise ExternalToolError(f"Failed to execute {binary}: {e}", command=cmd) from e
    if proc.returncode != 0:
        message = (proc.stderr or proc.stdout or "").strip() or f"{binary} exited with status {proc.returncode}"
        raise ExternalToolError(message, command=cmd, returncode=proc.returncode)
    return proc.stdout


def _parse_human_size(number: str, unit: str) -> int:
    key = unit.upper().rstrip("B").rstrip("I") if unit else ""
    return int(float(number) * _UNITS.get(key, 1))


def parse_info(output: str) -> ImageInfo:
    """Parse ``qemu-img info`` text output.

    Raises:
        ExternalToolError: if no ``virtual size ... (N bytes)`` line is present
    """
    size_match = _VIRTUAL_SIZE_RE.search(output)
    if not size_match:
        raise ExternalToolError("Could not determine virtual size from qemu-img info output")

    format_match = _FORMAT_RE.search(output)
    disk_match = _DISK_SIZE_RE.search(output)
    prealloc_match = _PREALLOC_RE.search(output)
    subformat_match = _SUBFORMAT_RE.search(output)
    backing_match = _BACKING_RE.search(output)

    return ImageInfo(
        virtual_size=int(size_match.group(1)),
        format=format_match.group(1) if format_match else "unknown",
        disk_size=_parse_human_size(*disk_match.groups()) if disk_match else None,
        preallocation=prealloc_match.group(1) if prealloc_match else None,
        subformat=subformat_match.group(1) if subformat_match else None,
        backing_file=backing_match.group(1) if backing_match else None,
    )


def info(path: Union[str, Path], binary: str = DEFAULT_BINARY) -> ImageInfo:
    # --force-share lets us probe images a running hypervisor holds locked
    return parse_info(run(["info", "--force-share", str(path)], binary=binary))


def create(path: Union[str, Path], fmt: str, size_gb: Optional[int] = None,
           options: Optional[List[str]] = None, backing_file: Optional[Union[str, Path]] = None,
           backing_format: Optional[str] = None, binary: str = DEFAULT_BINARY) -> str:
    args = ["create", "-f", fmt]
    if backing_file is not None:
        args += ["-b", str(backing_file)]
        if backing_format:
            args += ["-F", backing_format]
    if options:
        args += ["-o", ",".join(options)]
    args.append(str(path))
    if size_gb is not None:
        args.append(f"{size_gb}G")
    return run(args, binary=binary)


def resize(path: Union[str, Path], size_gb: int, fmt: Optional[str] = None,
           binary: str = DEFAULT_BINARY) -> str:
    args = ["resize"]
    if fmt:
        args += ["-f", fmt]
    args += [str(path), f"{size_gb}G"]
    return run(args, binary=binary)


def version(binary: str = DEFAULT_BINARY) -> Optional[str]:
    """Return the first line of ``qemu-img --version`` or None if unavailable."""
    try:
        out = run(["--version"], binary=binary)
    except ExternalToolError:
        return None
    return out.strip().splitlines()[0] if out.strip() else None
