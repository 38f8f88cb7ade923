#!/usr/bin/env python3
"""
Logging Manager for the QEMU VM manager

Provides centralized logging infrastructure management using Loguru framework.
Handles console and file logging with configurable formats, rotation, and retention.

Features:
- Colored console output with structured data
- JSON logging for production monitoring and analysis
- Automatic log rotation, compression, and retention

Dependencies:
- loguru: Professional logging framework
- omegaconf: Configuration management
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger
from omegaconf import DictConfig


class LoggingManager:
    """Centralized logging infrastructure management using Loguru framework.

    Attributes:
        config (DictConfig): Logging configuration from Hydra

    Example:
        log_manager = LoggingManager()
        log_manager.setup_logging(config)
    """

    def __init__(self):
        """Initialize the logging manager."""
        self.config: Optional[DictConfig] = None

    def setup_logging(self, cfg: DictConfig):
        """Configure Loguru logging based on Hydra configuration.

        Removes the default Loguru handler, then installs a console handler
        (unless ``logging.console`` is false) and, when ``logging.file`` is
        set, a rotating file handler.

        Logging Configuration Options:
            - level: DEBUG, INFO, WARNING, ERROR, CRITICAL
            - format: simple, detailed, json
            - file: Optional file path for file logging
            - rotation: Log rotation size (default: 100 MB)
            - retention: Log retention period (default: 30 days)
            - colorize: Enable/disable console colors (default: True)
        """
        self.config = cfg
        log_config = cfg.logging

        logger.remove()

        if log_config.get("console", True):
            logger.add(
                sys.stderr,
                format=self._get_console_format(log_config.format),
                level=log_config.level.upper(),
                colorize=log_config.get("colorize", True),
                backtrace=True,
                diagnose=log_config.level.upper() == "DEBUG"
            )

        if log_config.get("file"):
            self._setup_file_logging(log_config)

        logger.info("Loguru logging configured",
                    level=log_config.level,
                    format=log_config.format,
                    file=log_config.get("file") or "console-only")

    def _get_console_format(self, format_type: str) -> str:
        """Get console logging format string based on configuration."""
        if format_type == "simple":
            return "<level>{level}</level> - {message}"
        elif format_type == "json":
            return "{time:HH:mm:ss} | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> | {message} | {extra}"
        else:  # detailed
            return "{time:HH:mm:ss} | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level> {extra}"

    def _setup_file_logging(self, log_config: DictConfig):
        """Setup file logging with rotation and compression."""
        file_path = Path(log_config.file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        if log_config.format == "json":
            logger.add(
                file_path,
                level=log_config.level.upper(),
                rotation=log_config.get("rotation", "100 MB"),
                retention=log_config.get("retention", "30 days"),
                compression="gz",
                serialize=True
            )
        else:
            logger.add(
                file_path,
                format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message} {extra}",
                level=log_config.level.upper(),
                rotation=log_config.get("rotation", "100 MB"),
                retention=log_config.get("retention", "30 days"),
                compression="gz"
            )


# Global logging manager instance for easy access
_logging_manager = LoggingManager()


def setup_logging(cfg: DictConfig):
    """Setup global logging configuration."""
    _logging_manager.setup_logging(cfg)

