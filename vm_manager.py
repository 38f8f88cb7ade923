#!/usr/bin/env python3
"""
VM Manager for the QEMU VM manager

Provides centralized virtual machine lifecycle management for QEMU guests.
Turns a VM definition into a running, detached hypervisor process and keeps
the persisted record in step with every lifecycle transition.

Features:
- Disk and ISO resolution against the managed directories
- Hypervisor argument construction (CPU, memory, drive, media, network,
  acceleration, firmware, user-supplied extras)
- Detached process spawn with captured output
- Start, stop, pause, resume, restart and delete with record bookkeeping
- Live status, uptime, logs and resource metrics

Dependencies:
- qemu-system-*: QEMU full-system emulator
- psutil: Process inspection and signalling
"""

import re
import shlex
import subprocess
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil
from loguru import logger
from omegaconf import DictConfig

import launcher
from disk_manager import GiB, DiskManager
from errors import InvalidArgumentError, NotFoundError, QemuManagerError
from iso_repository import IsoRepository
from models import VMRecord, VMStatus
from state_store import StateStore
from status_reconciler import StatusReconciler
from validation import validate_vm_spec, validate_vm_update

# Options the supervisor sets itself or that would detach QEMU from us
OWNED_OPTIONS = {"daemonize", "pidfile", "name", "smp", "m"}

_MEMORY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(?:G|GB|GiB)?\s*$", re.IGNORECASE)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_memory(value: Any) -> str:
    """Normalize a memory amount in GB (``2``, ``"2"``, ``"2 GB"``) to its number as text."""
    match = _MEMORY_RE.match(str(value))
    if not match or float(match.group(1)) <= 0:
        raise InvalidArgumentError(f"Invalid memory value: {value!r} (expected a positive number of GB)")
    amount = float(match.group(1))
    return str(int(amount)) if amount.is_integer() else str(amount)


def parse_custom_args(value: Any) -> List[str]:
    """Tokenize user-supplied hypervisor arguments.

    Strings are split with POSIX shell rules; lists are taken as ready-made
    tokens. Nothing is ever passed through a shell.

    Raises:
        InvalidArgumentError: unbalanced quoting, NUL bytes, or an option the
            supervisor controls itself
    """
    if value is None or value == "":
        return []
    if isinstance(value, str):
        try:
            tokens = shlex.split(value)
        except ValueError as e:
            raise InvalidArgumentError(f"Invalid customArgs: {e}")
    elif isinstance(value, (list, tuple)):
        tokens = [str(t) for t in value]
    else:
        raise InvalidArgumentError("customArgs must be a string or a list of strings")

    for token in tokens:
        if "\x00" in token:
            raise InvalidArgumentError("customArgs must not contain NUL characters")
        if token.startswith("-") and token.lstrip("-").split("=", 1)[0] in OWNED_OPTIONS:
            raise InvalidArgumentError(f"customArgs may not override {token}")
    return tokens


def _drive_path(path: Path) -> str:
    # QEMU option values escape commas by doubling them
    return str(path).replace(",", ",,")


class VMManager:
    """Centralized virtual machine lifecycle management for QEMU guests.

    Every operation that reads and rewrites a record holds the State Store's
    per-name lock for its whole duration. Responses carry a ``note`` instead of
    an error when a signal finds the process already gone.

    Attributes:
        config (DictConfig): Configuration object with qemu and path settings
        store (StateStore): Persisted VM records
        disks (DiskManager): Disk resolution and deletion
        isos (IsoRepository): ISO resolution
        reconciler (StatusReconciler): Live status computation
        processes (Dict[str, subprocess.Popen]): Hypervisors spawned by this
            service instance, by VM name, kept so exited children get reaped

    Example:
        vm_manager = VMManager(config, store, disks, isos)
        vm = vm_manager.create_vm({"name": "web01", "cpus": 2, "memory": 2, "diskName": "web01"})
        vm_manager.stop_vm(vm["id"])
    """

    def __init__(self, config: DictConfig, store: StateStore, disks: DiskManager, isos: IsoRepository,
                 reconciler: Optional[StatusReconciler] = None):
        """Initialize the VM manager.

        Args:
            config (DictConfig): Configuration with ``qemu`` and ``paths`` sections
            store (StateStore): Record persistence
            disks (DiskManager): Disk image access
            isos (IsoRepository): ISO image access
            reconciler (StatusReconciler, optional): Defaults to a wall-clock reconciler
        """
        self.config = config
        self.store = store
        self.disks = disks
        self.isos = isos
        self.reconciler = reconciler or StatusReconciler()
        self.binary = config.qemu.binary
        self.logs_root = str(config.paths.logs)
        self.processes: Dict[str, subprocess.Popen] = {}
        self._processes_guard = threading.Lock()
        self._metric_procs: Dict[str, psutil.Process] = {}

        logger.info("VM Manager initialized",
                    binary=self.binary,
                    vms=str(store.directory),
                    disks=str(disks.directory))

    # ------------------------------------------------------------ arguments

    def build_qemu_args(self, record: VMRecord, disk_path: Path, iso_path: Optional[Path] = None) -> List[str]:
        """Build the hypervisor argv (without the binary) for ``record``.

        Order: identity, CPU, memory, drive, install media, network,
        acceleration, firmware, then the record's custom arguments.
        """
        args = [
            "-name", record.name,
            "-smp", str(record.cpus),
            "-m", f"{parse_memory(record.memory)}G",
            "-drive", f"file={_drive_path(disk_path)},format={record.disk_format},if=virtio",
        ]
        if iso_path is not None:
            args += ["-cdrom", str(iso_path), "-boot", "order=d"]

        if record.network_type == "user":
            args += ["-net", "nic,model=virtio", "-net", "user"]
        elif record.network_type == "bridge":
            bridge = record.network_bridge or self.config.qemu.default_bridge
            args += ["-net", "nic,model=virtio", "-net", f"bridge,br={bridge}"]

        if record.enable_kvm:
            args.append("-enable-kvm")
        if record.enable_efi:
            args += ["-bios", str(self.config.qemu.ovmf_path)]

        args += list(record.custom_args)
        return args

    # ------------------------------------------------------------ processes

    def _spawn(self, record: VMRecord, disk_path: Path, iso_path: Optional[Path]) -> None:
        args = self.build_qemu_args(record, disk_path, iso_path)
        proc, _ = launcher.start_hypervisor(record.name, self.binary, args, self.logs_root)
        with self._processes_guard:
            self.processes[record.name] = proc

        record.pid = proc.pid
        record.process_started_at = launcher.process_start_time(proc.pid)
        record.started_at = now_iso()
        if record.process_started_at is None:
            logger.warning("Hypervisor exited right after launch", vm=record.name, pid=proc.pid)
            self._mark_stopped(record)
            return
        record.status = VMStatus.RUNNING.value
        logger.success("VM started", vm=record.name, pid=proc.pid)

    def _launch_from_record(self, record: VMRecord) -> None:
        """Respawn using only what the record persisted."""
        disk_path = self.disks.disk_path(record.disk_filename)
        iso_path = self.isos.iso_path(record.iso) if record.iso else None
        try:
            self._spawn(record, disk_path, iso_path)
        except QemuManagerError:
            self._mark_stopped(record)
            self.store.update(record)
            raise

    def _forget_process(self, name: str) -> None:
        with self._processes_guard:
            proc = self.processes.pop(name, None)
        if proc is not None:
            proc.poll()
        self._metric_procs.pop(name, None)

    def _reap_exited(self) -> None:
        with self._processes_guard:
            for name, proc in list(self.processes.items()):
                if proc.poll() is not None:
                    logger.info("Hypervisor exited", vm=name, pid=proc.pid, returncode=proc.returncode)
                    del self.processes[name]

    def _terminate(self, record: VMRecord) -> bool:
        """Stop the record's verified process; False if there was none."""
        proc = self.reconciler.find_process(record)
        killed = False
        if proc is not None:
            killed = launcher.terminate_process(proc, timeout=self.config.qemu.shutdown_timeout)
        self._forget_process(record.name)
        launcher.clear_pid_file(record.name, self.logs_root)
        return killed

    @staticmethod
    def _mark_stopped(record: VMRecord) -> None:
        record.status = VMStatus.STOPPED.value
        record.pid = None
        record.process_started_at = None
        record.started_at = None

    def _view(self, record: VMRecord) -> Dict[str, Any]:
        return self.reconciler.reconcile(record).to_public()

    # ------------------------------------------------------------ lifecycle

    def create_vm(self, spec: Dict[str, Any]) -> Dict[str, Any]:
        """Create a VM record and start its hypervisor.

        Args:
            spec (Dict[str, Any]): camelCase VM definition; ``name``,
                ``cpus``, ``memory`` and ``diskName`` are required

        Returns:
            Dict[str, Any]: The public view of the new record

        Raises:
            InvalidArgumentError: invalid definition or a 0 GB disk
            NotFoundError: disk or ISO not found
            ExternalToolError: qemu-img or the hypervisor failed

        Example:
            vm = vm_manager.create_vm({
                "name": "web01", "cpus": 2, "memory": "2 GB", "diskName": "web01",
                "networkType": "user", "enableKVM": True,
            })
        """
        payload = {k: v for k, v in spec.items() if v is not None}
        validate_vm_spec(payload)
        name = payload["name"]
        self.store.path_for(name)
        memory = parse_memory(payload["memory"])
        custom_args = parse_custom_args(payload.get("customArgs"))

        disk = self.disks.resolve_vm_disk(payload["diskName"])
        size_gb = round(self.disks.virtual_size(disk.path) / GiB)
        if size_gb == 0:
            raise InvalidArgumentError(f'Disk "{disk.filename}" has a virtual size of 0 GB')

        iso = payload.get("iso") or None
        iso_path = self.isos.iso_path(iso) if iso else None

        logger.info("Creating VM", vm=name, cpus=payload["cpus"], memory_gb=memory, disk=disk.filename)
        with self.store.locked(name):
            previous = self.store.read(name)
            if previous is not None and self.reconciler.is_alive(previous):
                logger.warning("Replacing record of a VM whose hypervisor is still running",
                               vm=name, pid=previous.pid)

            record = VMRecord(
                id=self.store.new_id(),
                name=name,
                cpus=payload["cpus"],
                memory=f"{memory} GB",
                storage=f"{size_gb} GB",
                os=payload.get("os") or "Custom OS",
                disk_name=disk.name,
                disk_format=disk.format,
                disk_file=disk.filename,
                iso=iso,
                network_type=payload.get("networkType"),
                network_bridge=payload.get("networkBridge"),
                enable_kvm=bool(payload.get("enableKVM", False)),
                enable_efi=bool(payload.get("enableEFI", False)),
                custom_args=custom_args,
                created_at=now_iso(),
            )
            self._spawn(record, disk.path, iso_path)
            self.store.put(record)

        return self._view(record)

    def start_vm(self, vm_id: str) -> Dict[str, Any]:
        """Start a stopped VM from its persisted parameters; no-op if running."""
        with self.store.locked_record(vm_id) as record:
            if self.reconciler.is_alive(record):
                return {"message": f"VM {record.name} is already running", "note": "already running",
                        "vm": self._view(record)}
            self._launch_from_record(record)
            self.store.update(record)
        return {"message": f"VM {record.name} started", "vm": self._view(record)}

    def stop_vm(self, vm_id: str) -> Dict[str, Any]:
        """Terminate the VM's hypervisor and mark it stopped.

        A process that is already gone is not an error; the response then
        carries ``note: "process already stopped"``.
        """
        with self.store.locked_record(vm_id) as record:
            killed = self._terminate(record)
            self._mark_stopped(record)
            self.store.update(record)

        logger.info("VM stopped", vm=record.name, killed=killed)
        result = {"message": f"VM {record.name} stopped", "vm": self._view(record)}
        if not killed:
            result["note"] = "process already stopped"
        return result

    def pause_vm(self, vm_id: str) -> Dict[str, Any]:
        """Suspend the hypervisor process (host-level SIGSTOP, not a guest pause)."""
        with self.store.locked_record(vm_id) as record:
            proc = self.reconciler.find_process(record)
            if proc is None or not launcher.suspend_process(proc):
                self._mark_stopped(record)
                self.store.update(record)
                return {"message": f"VM {record.name} is not running", "note": "process not running",
                        "vm": self._view(record)}
            record.status = VMStatus.PAUSED.value
            self.store.update(record)

        logger.info("VM paused", vm=record.name, pid=record.pid)
        return {"message": f"VM {record.name} paused", "vm": self._view(record)}

    def resume_vm(self, vm_id: str) -> Dict[str, Any]:
        with self.store.locked_record(vm_id) as record:
            proc = self.reconciler.find_process(record)
            if proc is None or not launcher.resume_process(proc):
                self._mark_stopped(record)
                self.store.update(record)
                return {"message": f"VM {record.name} is not running", "note": "process not running",
                        "vm": self._view(record)}
            record.status = VMStatus.RUNNING.value
            self.store.update(record)

        logger.info("VM resumed", vm=record.name, pid=record.pid)
        return {"message": f"VM {record.name} resumed", "vm": self._view(record)}

    def restart_vm(self, vm_id: str) -> Dict[str, Any]:
        """Terminate (tolerating a dead process) and respawn from the record."""
        with self.store.locked_record(vm_id) as record:
            killed = self._terminate(record)
            self._launch_from_record(record)
            self.store.update(record)

        result = {"message": f"VM {record.name} restarted", "vm": self._view(record)}
        if not killed:
            result["note"] = "process was not running"
        return result

    def update_vm(self, vm_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Edit the record's editable fields; changes apply on the next (re)start.

        Raises:
            InvalidArgumentError: no fields, or a field that is not editable
            NotFoundError: unknown VM, or the new ISO does not exist
        """
        if not fields:
            raise InvalidArgumentError("No editable fields provided")
        validate_vm_update(fields)

        with self.store.locked_record(vm_id) as record:
            if "cpus" in fields:
                record.cpus = fields["cpus"]
            if "memory" in fields:
                record.memory = f"{parse_memory(fields['memory'])} GB"
            if "os" in fields:
                record.os = fields["os"]
            if "iso" in fields:
                iso = fields["iso"] or None
                if iso:
                    self.isos.iso_path(iso)
                record.iso = iso
            if "networkType" in fields:
                record.network_type = fields["networkType"]
            if "networkBridge" in fields:
                record.network_bridge = fields["networkBridge"]
            if "enableKVM" in fields:
                record.enable_kvm = fields["enableKVM"]
            if "enableEFI" in fields:
                record.enable_efi = fields["enableEFI"]
            if "customArgs" in fields:
                record.custom_args = parse_custom_args(fields["customArgs"])
            self.store.update(record)

        logger.info("VM record updated", vm=record.name, fields=sorted(fields))
        return {"message": f"VM {record.name} updated; changes apply on next start", "vm": self._view(record)}

    def delete_vm(self, vm_id: str, remove_disks: bool = False) -> Dict[str, Any]:
        """Terminate the VM (best effort), delete its record and optionally its disk.

        Raises:
            NotFoundError: unknown id, including a second delete of the same VM
        """
        with self.store.locked_record(vm_id) as record:
            killed = self._terminate(record)
            self.store.delete(record)
            removed_disk = None
            if remove_disks:
                try:
                    self.disks.delete_disk(record.disk_filename)
                    removed_disk = record.disk_filename
                except NotFoundError:
                    logger.warning("Disk already gone", vm=record.name, disk=record.disk_filename)

        logger.info("VM deleted", vm=record.name, killed=killed, removed_disk=removed_disk)
        message = f"VM {record.name} deleted"
        if not killed:
            message += " (process already stopped)"
        return {"message": message, "killed": killed, "removedDisk": removed_disk}

    # --------------------------------------------------------------- queries

    def get_vm(self, vm_id: str) -> Dict[str, Any]:
        self._reap_exited()
        return self._view(self.store.get(vm_id))

    def list_vms(self) -> List[Dict[str, Any]]:
        self._reap_exited()
        return [self._view(record) for record in self.store.list()]

    def vm_logs(self, vm_id: str) -> Dict[str, Any]:
        record = self.store.get(vm_id)
        logs = launcher.read_logs(record.name, self.logs_root)
        return {"id": record.id, "name": record.name, **logs}

    def vm_metrics(self, vm_id: str) -> Dict[str, Any]:
        """Live CPU and memory usage of the VM's hypervisor process.

        The first call for a process primes psutil's CPU baseline and reports 0.

        Raises:
            InvalidArgumentError: the VM is not running
        """
        record = self.store.get(vm_id)
        proc = self.reconciler.find_process(record)
        if proc is None:
            self._metric_procs.pop(record.name, None)
            raise InvalidArgumentError(f"VM {record.name} is not running")

        try:
            cached = self._metric_procs.get(record.name)
            if cached is None or cached.pid != proc.pid:
                cached = proc
                self._metric_procs[record.name] = cached
                cached.cpu_percent(interval=0)
            cpu_percent = cached.cpu_percent(interval=0)
            rss = cached.memory_info().rss
            threads = cached.num_threads()
        except psutil.NoSuchProcess:
            self._metric_procs.pop(record.name, None)
            raise InvalidArgumentError(f"VM {record.name} is not running")

        return {
            "id": record.id,
            "name": record.name,
            "pid": proc.pid,
            "status": self.reconciler.reconcile(record).status,
            "cpuPercent": round(cpu_percent, 1),
            "cpus": record.cpus,
            "memoryRssMb": round(rss / (1024 * 1024), 1),
            "memoryConfigured": record.memory,
            "threads": threads,
        }
