#!/usr/bin/env python3
"""
Configuration Manager for the QEMU VM manager

Provides centralized configuration management using Hydra and OmegaConf frameworks.
Handles configuration validation, environment-specific settings, and dynamic overrides.

Features:
- YAML-based hierarchical configuration files
- Type-safe configuration validation with dataclasses
- Command-line parameter overrides with nested dot notation
- Host checks for the hypervisor, image tool and UEFI firmware

Dependencies:
- hydra-core: Configuration management framework by Facebook
- omegaconf: Configuration objects with validation
- dataclasses: Type-safe configuration schemas
"""

import shutil
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

from hydra import compose, initialize_config_dir
from hydra.core.global_hydra import GlobalHydra
from omegaconf import DictConfig, OmegaConf

from config.schema import QemuManagerConfig, validate_config as validate_schema


class ConfigurationError(Exception):
    """Exception raised for configuration-related errors."""
    pass


class ConfigManager:
    """Centralized configuration management using Hydra and OmegaConf frameworks.

    Manages Hydra configuration lifecycle, validation, and environment-specific
    settings for the VM manager service. Provides type-safe configuration
    loading with comprehensive validation.

    Attributes:
        config_dir (Path): Directory containing configuration files
        config (DictConfig): Currently loaded configuration
        schema_class: Configuration schema class for validation

    Example:
        config_manager = ConfigManager()
        config = config_manager.load_config("default", ["server.port=8080"])
    """

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize the configuration manager.

        Args:
            config_dir (Path, optional): Directory containing config files.
                                       Defaults to ./config/
        """
        if config_dir is None:
            config_dir = Path(__file__).parent / "config"

        self.config_dir = config_dir
        self.config: Optional[DictConfig] = None
        self.schema_class = QemuManagerConfig

    def load_config(self,
                    config_name: str = "default",
                    overrides: Optional[List[str]] = None) -> DictConfig:
        """Load configuration from YAML files with optional overrides.

        Args:
            config_name (str): Name of the configuration file to load
            overrides (List[str], optional): Command-line parameter overrides
                                           in dot notation (e.g., "qemu.binary=qemu-kvm")

        Returns:
            DictConfig: Loaded and validated configuration object

        Raises:
            ConfigurationError: If configuration files are not found or invalid
        """
        if overrides is None:
            overrides = []

        # Clear any existing Hydra global state
        if GlobalHydra().is_initialized():
            GlobalHydra.instance().clear()

        try:
            with initialize_config_dir(config_dir=str(self.config_dir.resolve()), version_base=None):
                self.config = compose(config_name=config_name, overrides=overrides)
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

        self.validate_config(self.config)
        return self.config

    def validate_config(self, config: DictConfig) -> None:
        """Validate configuration against schema and check the host.

        Schema violations are fatal; a missing hypervisor, image tool or
        firmware file only produces a warning, since the service can still
        manage ISO files and records without them.

        Raises:
            ConfigurationError: If configuration validation fails
        """
        try:
            validated = validate_schema(config)
        except ValueError as e:
            raise ConfigurationError(str(e))

        self._check_binaries(validated)
        self._check_firmware(validated)

    def _check_binaries(self, config: QemuManagerConfig) -> None:
        for key in ("binary", "img_binary"):
            value = getattr(config.qemu, key)
            if shutil.which(value) is None:
                warnings.warn(f"qemu.{key} '{value}' was not found on PATH")

    def _check_firmware(self, config: QemuManagerConfig) -> None:
        if not Path(config.qemu.ovmf_path).exists():
            warnings.warn(f"UEFI firmware not found at {config.qemu.ovmf_path}; enableEFI will fail to boot")

    def get_config_summary(self, config: DictConfig) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "qemu_binary": config.qemu.binary,
            "qemu_img_binary": config.qemu.img_binary,
            "shutdown_timeout": config.qemu.shutdown_timeout,
            "paths_vms": str(config.paths.vms),
            "paths_disks": str(config.paths.disks),
            "paths_isos": str(config.paths.isos),
            "paths_snapshots": str(config.paths.snapshots),
            "server": f"{config.server.host}:{config.server.port}",
            "logging_level": config.logging.level,
        }

    @staticmethod
    def create_override_list(overrides_dict: Dict[str, Any]) -> List[str]:
        """Convert dictionary of overrides to Hydra override list format.

        Example:
            overrides = ConfigManager.create_override_list({
                "qemu": {"shutdown_timeout": 10},
                "logging.level": "DEBUG"
            })
            # Returns: ["qemu.shutdown_timeout=10", "logging.level=DEBUG"]
        """
        override_list = []

        def _flatten_dict(d: Dict[str, Any], prefix: str = "") -> None:
            for key, value in d.items():
                full_key = f"{prefix}.{key}" if prefix else key

                if isinstance(value, dict):
                    _flatten_dict(value, full_key)
                else:
                    override_list.append(f"{full_key}={value}")

        _flatten_dict(overrides_dict)
        return override_list


def default_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """Build a config from the schema defaults without going through Hydra.

    Used by tests and by callers embedding the service in another process.
    """
    cfg = OmegaConf.structured(QemuManagerConfig)
    if overrides:
        cfg = OmegaConf.merge(cfg, OmegaConf.create(overrides))
    return cfg

