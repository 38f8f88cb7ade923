"""Schema validation helpers for VM and disk requests.

Provides JSON Schemas for the create-VM, update-VM, create-disk and
update-disk payloads and helpers that turn schema violations into
InvalidArgumentError.
"""
from jsonschema import Draft7Validator

from errors import InvalidArgumentError

NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$"

DISK_FORMATS = ["qcow2", "raw", "vmdk", "vdi", "vpc"]
DISK_TYPES = ["dynamic", "fixed"]
NETWORK_TYPES = ["user", "bridge", "none"]

_POSITIVE_NUMBER = {
    "anyOf": [
        {"type": "number", "exclusiveMinimum": 0},
        {"type": "string", "pattern": r"^\s*\d+(\.\d+)?\s*([Gg]([Bb]|i[Bb])?)?\s*$"},
    ]
}

_CUSTOM_ARGS = {
    "anyOf": [
        {"type": "string"},
        {"type": "array", "items": {"type": "string"}},
        {"type": "null"},
    ]
}

CREATE_VM_SCHEMA = {
    "type": "object",
    "required": ["name", "cpus", "memory", "diskName"],
    "properties": {
        "name": {"type": "string", "pattern": NAME_PATTERN},
        "cpus": {"type": "integer", "minimum": 1, "maximum": 512},
        "memory": _POSITIVE_NUMBER,
        "diskName": {"type": "string", "minLength": 1},
        "os": {"type": ["string", "null"]},
        "iso": {"type": ["string", "null"]},
        "networkType": {"enum": NETWORK_TYPES + [None]},
        "networkBridge": {"type": ["string", "null"], "pattern": r"^[A-Za-z0-9._-]{1,15}$"},
        "enableKVM": {"type": ["boolean", "null"]},
        "enableEFI": {"type": ["boolean", "null"]},
        "customArgs": _CUSTOM_ARGS,
    },
}

UPDATE_VM_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "cpus": {"type": "integer", "minimum": 1, "maximum": 512},
        "memory": _POSITIVE_NUMBER,
        "os": {"type": "string"},
        "iso": {"type": ["string", "null"]},
        "networkType": {"enum": NETWORK_TYPES + [None]},
        "networkBridge": {"type": ["string", "null"], "pattern": r"^[A-Za-z0-9._-]{1,15}$"},
        "enableKVM": {"type": "boolean"},
        "enableEFI": {"type": "boolean"},
        "customArgs": _CUSTOM_ARGS,
    },
}

CREATE_DISK_SCHEMA = {
    "type": "object",
    "required": ["name", "size", "format"],
    "properties": {
        "name": {"type": "string", "pattern": NAME_PATTERN},
        "size": {"type": "integer", "minimum": 1},
        "format": {"type": "string"},
        "type": {"type": ["string", "null"]},
    },
}

UPDATE_DISK_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": ["string", "null"], "pattern": NAME_PATTERN},
        "size": {"type": ["integer", "null"], "minimum": 1},
    },
}


def _validate(payload: dict, schema: dict, what: str) -> bool:
    errors = sorted(Draft7Validator(schema).iter_errors(payload), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        where = ".".join(str(p) for p in first.path)
        detail = f"{where}: {first.message}" if where else first.message
        raise InvalidArgumentError(f"Invalid {what}: {detail}")
    return True


def validate_vm_spec(payload: dict) -> bool:
    """Validate a create-VM payload.

    Raises:
        InvalidArgumentError: naming the first offending field.

    Returns:
        True when valid.
    """
    return _validate(payload, CREATE_VM_SCHEMA, "VM definition")


def validate_vm_update(payload: dict) -> bool:
    return _validate(payload, UPDATE_VM_SCHEMA, "VM update")


def validate_disk_spec(payload: dict) -> bool:
    return _validate(payload, CREATE_DISK_SCHEMA, "disk definition")


def validate_disk_update(payload: dict) -> bool:
    return _validate(payload, UPDATE_DISK_SCHEMA, "disk update")
