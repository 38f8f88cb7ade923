"""
Snapshot Engine

Creates copy-on-write qcow2 overlays backed by a VM's disk image. Overlays
are written to the snapshot directory as ``<diskName>-<epoch ms>.qcow2`` and
are not tracked afterwards.
"""

import time
from pathlib import Path
from typing import Dict

from loguru import logger

import qemu_img
from errors import NotFoundError
from state_store import StateStore
from utils.fs import resolve_child


class SnapshotManager:
    """Overlay creation for VM disks.

    Attributes:
        store (StateStore): Source of VM records
        disks_dir (Path): Directory the backing images live in
        snapshots_dir (Path): Directory overlays are written to
    """

    def __init__(self, store: StateStore, disks_dir: Path, snapshots_dir: Path,
                 img_binary: str = qemu_img.DEFAULT_BINARY):
        self.store = store
        self.disks_dir = Path(disks_dir)
        self.snapshots_dir = Path(snapshots_dir)
        self.snapshots_dir.mkdir(parents=True, exist_ok=True)
        self.img_binary = img_binary

    def create_snapshot(self, vm_id: str) -> Dict[str, str]:
        """Create an overlay on top of the VM's current disk.

        Returns:
            Dict with ``snapshot`` (file name), ``path`` and ``backingFile``

        Raises:
            NotFoundError: unknown VM, or its disk file is gone
            ExternalToolError: qemu-img create failed
        """
        record = self.store.get(vm_id)
        disk_path = resolve_child(self.disks_dir, record.disk_filename)
        if not disk_path.is_file():
            raise NotFoundError(f'Disk file "{record.disk_filename}" for VM {record.name} not found')

        snapshot_name = f"{record.disk_name}-{time.time_ns() // 1_000_000}.qcow2"
        snapshot_path = self.snapshots_dir / snapshot_name
        # Absolute backing path: qemu-img resolves relative ones against the overlay's directory
        backing = disk_path.resolve()
        qemu_img.create(snapshot_path, "qcow2", backing_file=backing, backing_format=record.disk_format,
                        binary=self.img_binary)

        logger.success("Snapshot created", vm=record.name, snapshot=snapshot_name, backing=str(backing))
        return {
            "message": f"Snapshot {snapshot_name} created successfully",
            "snapshot": snapshot_name,
            "path": str(snapshot_path),
            "backingFile": str(backing),
        }
