"""Error taxonomy shared by the disk, ISO, snapshot and VM managers.

Every error carries a machine-readable ``kind`` and the HTTP status the API
layer maps it to. Signal delivery to an already-dead process is deliberately
not part of this hierarchy: it is reported as a note, never raised.
"""


class QemuManagerError(Exception):
    """Base class for errors surfaced to API callers."""

    kind = "internal"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class NotFoundError(QemuManagerError):
    """A VM, disk, ISO or snapshot source does not exist."""

    kind = "not_found"
    status_code = 404


class InvalidArgumentError(QemuManagerError):
    """Missing field, disallowed format/type pair, shrink request, bad name."""

    kind = "invalid_argument"
    status_code = 400


class ConflictError(QemuManagerError):
    """The target of a create or rename already exists."""

    kind = "conflict"
    status_code = 409


class ExternalToolError(QemuManagerError):
    """qemu-img or the hypervisor exited non-zero or could not be spawned."""

    kind = "external_tool_failure"
    status_code = 502

    def __init__(self, message: str, command=None, returncode=None):
        super().__init__(message)
        self.command = command
        self.returncode = returncode
