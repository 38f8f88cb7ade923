"""
State Store for VM records

Persists one JSON file per VM under the configured VM directory, named
after the VM. Records are looked up by id through an in-memory id -> name
index that is verified against the file on every hit and rebuilt by a
directory scan on a miss, so records written or removed behind our back are
still found (or reported missing) correctly.

Writes go through a temporary file and ``os.replace``. Read-modify-write
cycles are serialized per VM name with re-entrant locks; callers hold
``locked(name)`` (or ``locked_record(vm_id)``) across the whole cycle.
"""

import json
import re
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from loguru import logger
from pydantic import ValidationError

from errors import InvalidArgumentError, NotFoundError
from models import VMRecord
from utils.fs import atomic_write_text, resolve_child
from utils.locks import KeyedLocks
from validation import NAME_PATTERN

_NAME_RE = re.compile(NAME_PATTERN)


class StateStore:
    """File-backed VM record store.

    Attributes:
        directory (Path): Directory holding ``<name>.json`` record files

    Example:
        store = StateStore(Path("data/vms"))
        with store.locked("web01"):
            store.put(record)
        record = store.get(record.id)
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._index: Dict[str, str] = {}
        self._locks = KeyedLocks(threading.RLock)
        self._id_guard = threading.Lock()
        self._last_id = 0
        self._scan()

    # ----------------------------------------------------------------- ids

    def new_id(self) -> str:
        """Return a time-based id strictly greater than any issued before."""
        with self._id_guard:
            candidate = max(time.time_ns() // 1_000_000, self._last_id + 1)
            self._last_id = candidate
            return str(candidate)

    # --------------------------------------------------------------- locks

    def locked(self, name: str):
        return self._locks.hold(name)

    @contextmanager
    def locked_record(self, vm_id: str) -> Iterator[VMRecord]:
        """Lock the record's name and yield a copy read under that lock."""
        record = self.get(vm_id)
        with self.locked(record.name):
            # Re-read: the record may have changed while we waited
            yield self.get(vm_id)

    # ---------------------------------------------------------------- paths

    def path_for(self, name: str) -> Path:
        if not _NAME_RE.match(name or ""):
            raise InvalidArgumentError(f"Invalid VM name: {name!r}")
        return resolve_child(self.directory, f"{name}.json")

    # ---------------------------------------------------------------- reads

    def _load(self, path: Path) -> Optional[VMRecord]:
        try:
            return VMRecord.model_validate(json.loads(path.read_text()))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Skipping unreadable VM record", path=str(path), error=str(e))
            return None

    def _scan(self) -> List[VMRecord]:
        records = []
        index = {}
        for path in sorted(self.directory.glob("*.json")):
            record = self._load(path)
            if record is None:
                continue
            records.append(record)
            index[record.id] = record.name
            if record.id.isdigit():
                self._last_id = max(self._last_id, int(record.id))
        self._index = index
        return records

    def read(self, name: str) -> Optional[VMRecord]:
        return self._load(self.path_for(name))

    def find(self, vm_id: str) -> Optional[VMRecord]:
        name = self._index.get(vm_id)
        if name is not None:
            record = self._load(self.path_for(name))
            if record is not None and record.id == vm_id:
                return record
        for record in self._scan():
            if record.id == vm_id:
                return record
        return None

    def get(self, vm_id: str) -> VMRecord:
        record = self.find(vm_id)
        if record is None:
            raise NotFoundError(f"VM {vm_id} not found")
        return record

    def list(self) -> List[VMRecord]:
        """Return every parseable record; malformed files are logged and skipped."""
        return self._scan()

    # --------------------------------------------------------------- writes

    def put(self, record: VMRecord) -> VMRecord:
        """Write ``record`` to ``<name>.json``, replacing any previous record of that name."""
        path = self.path_for(record.name)
        with self.locked(record.name):
            previous = self._load(path)
            if previous is not None and previous.id != record.id:
                logger.warning("Overwriting VM record with the same name",
                               name=record.name, previous_id=previous.id, new_id=record.id)
                self._index.pop(previous.id, None)
            atomic_write_text(path, json.dumps(record.to_storage(), indent=2))
            self._index[record.id] = record.name
        return record

    def update(self, record: VMRecord) -> VMRecord:
        """Rewrite an existing record; NotFoundError if it was deleted meanwhile."""
        with self.locked(record.name):
            current = self.read(record.name)
            if current is None or current.id != record.id:
                raise NotFoundError(f"VM {record.id} not found")
            return self.put(record)

    def delete(self, record: VMRecord) -> bool:
        path = self.path_for(record.name)
        with self.locked(record.name):
            self._index.pop(record.id, None)
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True
