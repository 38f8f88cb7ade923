"""
Configuration schema validation for the QEMU VM manager.

This module defines dataclasses that provide type safety and validation
for configuration files. Used with Hydra and OmegaConf for robust
configuration management.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass
class PathsConfig:
    """Directories holding persisted state, one per resource kind."""
    vms: str = "data/vms"
    disks: str = "data/disks"
    isos: str = "data/iso"
    snapshots: str = "data/snapshots"
    logs: str = "data/logs"

    def __post_init__(self):
        """Reject overlapping state directories."""
        dirs = [self.vms, self.disks, self.isos, self.snapshots]
        resolved = [str(Path(d).expanduser().resolve()) for d in dirs]
        if len(set(resolved)) != len(resolved):
            raise ValueError("paths.vms, paths.disks, paths.isos and paths.snapshots must be distinct")


@dataclass
class QemuConfig:
    """Hypervisor and image tool settings."""
    binary: str = "qemu-system-x86_64"
    img_binary: str = "qemu-img"
    ovmf_path: str = "/usr/share/ovmf/OVMF.fd"
    default_bridge: str = "br0"
    shutdown_timeout: int = 5

    def __post_init__(self):
        """Validate hypervisor settings."""
        if not self.binary:
            raise ValueError("qemu.binary must not be empty")
        if not self.img_binary:
            raise ValueError("qemu.img_binary must not be empty")
        if self.shutdown_timeout < 0 or self.shutdown_timeout > 300:
            raise ValueError("qemu.shutdown_timeout must be between 0 and 300 seconds")


@dataclass
class ServerConfig:
    """HTTP listener settings."""
    host: str = "127.0.0.1"
    port: int = 3000

    def __post_init__(self):
        if not (0 < self.port < 65536):
            raise ValueError("server.port must be between 1 and 65535")


@dataclass
class LoggingConfig:
    """Logging configuration settings."""
    level: str = "INFO"
    format: str = "detailed"  # simple, detailed, json
    console: bool = True
    file: Optional[str] = None
    rotation: str = "100 MB"
    retention: str = "30 days"
    colorize: bool = True

    def __post_init__(self):
        """Validate logging configuration values."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.level.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        self.level = self.level.upper()

        valid_formats = ["simple", "detailed", "json"]
        if self.format not in valid_formats:
            raise ValueError(f"Invalid log format. Must be one of: {valid_formats}")


@dataclass
class QemuManagerConfig:
    """Complete configuration for the QEMU VM manager."""
    paths: PathsConfig = field(default_factory=PathsConfig)
    qemu: QemuConfig = field(default_factory=QemuConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def ensure_directories(paths: Any) -> Dict[str, Path]:
    """Create every state directory named in ``paths`` if missing.

    Idempotent; safe to call on every service construction. Accepts the
    dataclass, a DictConfig or any object exposing the same attributes.

    Returns:
        Dict[str, Path]: directory name -> resolved path
    """
    created = {}
    for name in ("vms", "disks", "isos", "snapshots", "logs"):
        directory = Path(getattr(paths, name)).expanduser()
        directory.mkdir(parents=True, exist_ok=True)
        created[name] = directory
    return created


def validate_config(config: Dict[str, Any]) -> QemuManagerConfig:
    """
    Validate configuration dictionary and return typed config object.

    Args:
        config: Configuration dictionary from Hydra/OmegaConf

    Returns:
        QemuManagerConfig: Validated configuration object

    Raises:
        ValueError: If configuration validation fails
    """
    from omegaconf import OmegaConf

    try:
        merged = OmegaConf.merge(OmegaConf.structured(QemuManagerConfig), config)
        # to_object instantiates the dataclasses, which runs __post_init__
        return OmegaConf.to_object(merged)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")
