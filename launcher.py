"""Hypervisor launcher.

Spawns the hypervisor detached from our session so that restarting the
service never takes running VMs down with it, captures its output under the
logs directory, and wraps the psutil calls used to stop, suspend and resume
it. Signal helpers return False instead of raising when the process has
already gone away.
"""
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import psutil
from loguru import logger

from errors import ExternalToolError


def _detach_kwargs() -> dict:
    if os.name == "nt":
        return {"creationflags": subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def start_hypervisor(name: str, binary: str, args: List[str], logs_root: str) -> Tuple[subprocess.Popen, Path]:
    """Start ``binary *args`` detached and capture its output.

    Returns (process, log_dir). stdout/stderr are appended to
    ``<logs_root>/<name>/qemu.out`` and ``qemu.err``; the pid is written to
    ``qemu.pid``.

    Raises:
        ExternalToolError: if the binary cannot be executed
    """
    log_dir = Path(logs_root) / name
    log_dir.mkdir(parents=True, exist_ok=True)

    cmd = [binary, *args]
    out_f = open(log_dir / "qemu.out", 'a')
    err_f = open(log_dir / "qemu.err", 'a')
    try:
        proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=out_f, stderr=err_f,
                                close_fds=True, **_detach_kwargs())
    except OSError as e:
        raise ExternalToolError(f"Failed to start {binary}: {e}", command=cmd) from e
    finally:
        # The child holds its own descriptors
        out_f.close()
        err_f.close()

    (log_dir / "qemu.pid").write_text(str(proc.pid))
    logger.debug("Hypervisor spawned", vm=name, pid=proc.pid, command=" ".join(cmd))
    return proc, log_dir


def process_start_time(pid: int) -> Optional[float]:
    try:
        return psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def terminate_process(proc: psutil.Process, timeout: float = 5) -> bool:
    """Terminate ``proc``, escalating to kill after ``timeout`` seconds.

    Returns False if the process was already gone.
    """
    try:
        proc.terminate()
        # A SIGSTOPped process cannot act on SIGTERM until continued
        proc.resume()
        try:
            proc.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            logger.warning("Hypervisor ignored SIGTERM, killing", pid=proc.pid)
            proc.kill()
            proc.wait(timeout=timeout)
    except psutil.NoSuchProcess:
        return False
    return True


def suspend_process(proc: psutil.Process) -> bool:
    try:
        proc.suspend()
    except psutil.NoSuchProcess:
        return False
    return True


def resume_process(proc: psutil.Process) -> bool:
    try:
        proc.resume()
    except psutil.NoSuchProcess:
        return False
    return True


def clear_pid_file(name: str, logs_root: str) -> None:
    p = Path(logs_root) / name / "qemu.pid"
    try:
        p.unlink()
    except FileNotFoundError:
        pass


def read_logs(name: str, logs_root: str, max_bytes: int = 64 * 1024) -> Dict[str, str]:
    """Return the tail of the captured stdout/stderr for ``name``."""
    log_dir = Path(logs_root) / name
    result = {}
    for stream in ("out", "err"):
        p = log_dir / f"qemu.{stream}"
        if not p.exists():
            result[f"std{stream}"] = ""
            continue
        with open(p, 'rb') as f:
            size = f.seek(0, os.SEEK_END)
            f.seek(max(size - max_bytes, 0))
            result[f"std{stream}"] = f.read().decode("utf-8", errors="replace")
    return result
