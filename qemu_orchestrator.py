#!/usr/bin/env python3
"""
QEMU VM Manager

An HTTP service that runs QEMU virtual machines as detached hypervisor
processes and manages the disk images and ISO media they boot from.

Features:
- VM create, start, stop, pause, resume, restart, edit and delete
- Live status and uptime reconciled against the host process table
- Disk image creation, listing, rename, grow-only resize and deletion
- ISO upload (multipart or base64), listing and deletion
- Copy-on-write qcow2 snapshots

Dependencies:
- QEMU (qemu-system-* and qemu-img)
- Python 3.8+

Example Usage:
    # Serve on the configured host/port (127.0.0.1:3000)
    python3 qemu_orchestrator.py

    # Override settings on the command line
    python3 qemu_orchestrator.py server.port=8080 qemu.binary=qemu-system-aarch64

    # Debug logging
    python3 qemu_orchestrator.py logging.level=DEBUG
"""

import sys

import hydra
import uvicorn
from loguru import logger
from omegaconf import DictConfig

from api_server import create_app
from config_manager import ConfigManager, ConfigurationError
from logging_manager import setup_logging


@hydra.main(version_base=None, config_path="config", config_name="default")
def main(cfg: DictConfig) -> None:
    """Main entry point with Hydra configuration management.

    Args:
        cfg: Hydra configuration loaded from config files

    Example usage:
        # Use a different config file from config/
        python3 qemu_orchestrator.py --config-name=production

        # Override specific values
        python3 qemu_orchestrator.py qemu.shutdown_timeout=15 paths.vms=/srv/qemu/vms
    """
    try:
        # Setup Loguru logging based on configuration
        setup_logging(cfg)

        config_manager = ConfigManager()
        config_manager.validate_config(cfg)
        logger.info("Configuration loaded", **config_manager.get_config_summary(cfg))

        app = create_app(cfg)
        # Loguru owns logging; keep uvicorn from installing its own handlers
        uvicorn.run(app, host=cfg.server.host, port=cfg.server.port, log_config=None)

    except ConfigurationError as e:
        logger.error("Invalid configuration", error=str(e))
        sys.exit(2)
    except Exception as e:
        logger.error("Application error", error=str(e))
        if cfg.logging.level == "DEBUG":
            # Loguru automatically includes traceback in exception logging
            logger.exception("Full traceback:")
        sys.exit(1)


if __name__ == "__main__":
    main()
