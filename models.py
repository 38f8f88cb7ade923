"""Data model for VM records, disks, ISO files and qemu-img probe results.

VM records are persisted with camelCase keys so that the files stay readable
by the dashboard front-end; Python code uses the snake_case attribute names.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class VMStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class NetworkType(str, Enum):
    USER = "user"
    BRIDGE = "bridge"
    NONE = "none"


class VMRecord(BaseModel):
    """Persisted description of one VM and the process backing it.

    ``status`` is the last value written by a lifecycle operation and is not
    authoritative once read back; ``uptime`` is derived at read time and is
    never written to disk.
    """

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    id: str
    name: str
    cpus: int
    memory: str
    storage: Optional[str] = None
    os: str = "Custom OS"
    status: VMStatus = VMStatus.STOPPED
    disk_name: str = Field(alias="diskName")
    disk_format: str = Field(alias="diskFormat")
    disk_file: Optional[str] = Field(default=None, alias="diskFile")
    iso: Optional[str] = None
    pid: Optional[int] = None
    process_started_at: Optional[float] = Field(default=None, alias="processStartedAt")
    network_type: Optional[str] = Field(default=None, alias="networkType")
    network_bridge: Optional[str] = Field(default=None, alias="networkBridge")
    enable_kvm: bool = Field(default=False, alias="enableKVM")
    enable_efi: bool = Field(default=False, alias="enableEFI")
    custom_args: List[str] = Field(default_factory=list, alias="customArgs")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    uptime: Optional[str] = None

    @property
    def disk_filename(self) -> str:
        # Records written before diskFile existed only know stem + format
        return self.disk_file or f"{self.disk_name}.{self.disk_format}"

    def to_public(self) -> dict:
        """Serialize for API responses (camelCase, derived fields included)."""
        return self.model_dump(by_alias=True, mode="json")

    def to_storage(self) -> dict:
        """Serialize for the state file (derived fields dropped)."""
        return self.model_dump(by_alias=True, mode="json", exclude={"uptime"})


class ImageInfo(BaseModel):
    """Fields parsed out of ``qemu-img info`` human-readable output."""

    virtual_size: int
    format: str = "unknown"
    disk_size: Optional[int] = None
    preallocation: Optional[str] = None
    subformat: Optional[str] = None
    backing_file: Optional[str] = None


class DiskInfo(BaseModel):
    name: str
    filename: str
    size: int
    format: str
    type: str


class IsoInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    size: str
    last_modified: str = Field(alias="lastModified")
