"""
Status Reconciler for VM records

Recomputes a record's status and uptime from the OS process table instead of
trusting the persisted ``status`` field. A recorded pid is only a weak
reference: the process is considered ours only if it exists, is not a
zombie, and its creation time matches the ``processStartedAt`` captured when
it was spawned. Anything else means the VM is stopped.

Reconciliation is read-only; it never rewrites the record file.
"""

import os
from datetime import datetime, timezone
from typing import Callable, Optional

import psutil
from loguru import logger

from models import VMRecord, VMStatus

# psutil reports creation time with clock-tick resolution; allow for rounding
CREATE_TIME_TOLERANCE = 1.0


def probe_pid(pid: int) -> bool:
    """Liveness probe: deliver signal 0 to ``pid``.

    On Windows ``os.kill`` would terminate the target, so psutil is asked instead.
    """
    if os.name == "nt":
        return psutil.pid_exists(pid)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by someone else
        return True
    return True


def _reap(pid: int) -> None:
    if os.name == "nt":
        return
    try:
        os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        # Not our child; init will collect it
        pass


def find_process(pid: Optional[int], started_at: Optional[float] = None) -> Optional[psutil.Process]:
    """Return the live process behind ``pid`` if it is still the one we spawned."""
    if not pid or not probe_pid(pid):
        return None
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            _reap(pid)
            return None
        if started_at is not None and abs(proc.create_time() - started_at) > CREATE_TIME_TOLERANCE:
            logger.warning("Recorded pid now belongs to a different process", pid=pid)
            return None
        return proc
    except psutil.NoSuchProcess:
        return None
    except psutil.AccessDenied:
        # Hypervisors run under our uid; a process we may not inspect is not ours
        return None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'}"


def format_uptime(seconds: float) -> str:
    """Format a duration using its most significant pair of units.

    Examples:
        format_uptime(90061) -> "1 day, 1 hour"
        format_uptime(3660)  -> "1 hour, 1 minute"
        format_uptime(59)    -> "0 minutes, 59 seconds"
    """
    total = max(int(seconds), 0)
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days > 0:
        return f"{_plural(days, 'day')}, {_plural(hours, 'hour')}"
    if hours > 0:
        return f"{_plural(hours, 'hour')}, {_plural(minutes, 'minute')}"
    return f"{_plural(minutes, 'minute')}, {_plural(secs, 'second')}"


class StatusReconciler:
    """Derives live status and uptime for VM records.

    Args:
        clock: returns the current aware datetime; injectable for tests
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._now = clock or (lambda: datetime.now(timezone.utc))

    def find_process(self, record: VMRecord) -> Optional[psutil.Process]:
        # Without a creation time the pid cannot be told apart from a reused one
        if record.process_started_at is None:
            return None
        return find_process(record.pid, record.process_started_at)

    def is_alive(self, record: VMRecord) -> bool:
        return self.find_process(record) is not None

    def uptime(self, record: VMRecord) -> Optional[str]:
        started = parse_timestamp(record.started_at)
        if started is None:
            return None
        return format_uptime((self._now() - started).total_seconds())

    def reconcile(self, record: VMRecord) -> VMRecord:
        """Return a copy of ``record`` with status and uptime recomputed."""
        result = record.model_copy()
        if self.is_alive(record):
            result.status = VMStatus.PAUSED.value if record.status == VMStatus.PAUSED else VMStatus.RUNNING.value
            result.uptime = self.uptime(record)
        else:
            if record.status != VMStatus.STOPPED:
                logger.debug("VM process not found, reporting stopped", vm=record.name, pid=record.pid)
            result.status = VMStatus.STOPPED.value
            result.uptime = None
        return result
