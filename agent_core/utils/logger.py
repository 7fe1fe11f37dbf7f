"""
Logger module - Logging configuration and utilities

This module provides logging configuration with support for:
- File and console logging
- Configuration from .env
- Structured logging with context
"""

import logging
import os
from typing import Optional

from .comprehensive_logger import ComprehensiveLogger, TaskLogger

# Flag to track if ComprehensiveLogger has been initialized
_comprehensive_logger_initialized = False


def _ensure_comprehensive_logger_initialized() -> None:
    """
    Initialize ComprehensiveLogger with .env configuration on first use.
    This is called automatically by get_logger().
    """
    global _comprehensive_logger_initialized

    if _comprehensive_logger_initialized:
        return

    _comprehensive_logger_initialized = True

    from agent_core.config.env_config import EnvConfig

    EnvConfig.load_env_file()

    log_level = os.getenv("AGENT_LOG_LEVEL", "INFO").upper()
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        logging.getLogger(__name__).warning(
            f"Unknown AGENT_LOG_LEVEL '{log_level}', falling back to INFO"
        )
        log_level = "INFO"

    ComprehensiveLogger.initialize(
        log_folder=os.getenv("AGENT_LOG_FOLDER", "./logs"),
        log_level=log_level,
        enable_console=EnvConfig.get_bool("AGENT_ENABLE_CONSOLE_LOGGING", True),
        enable_file=EnvConfig.get_bool("AGENT_ENABLE_FILE_LOGGING", False),
        max_bytes=EnvConfig.get_int("AGENT_LOG_MAX_BYTES", 10 * 1024 * 1024),
        backup_count=EnvConfig.get_int("AGENT_LOG_BACKUP_COUNT", 5),
    )


def get_logger(name: str, level: Optional[str] = None) -> TaskLogger:
    """
    Get or create a logger with standard formatting and .env configuration.

    The ComprehensiveLogger system is initialized on first call, which loads
    configuration from .env and enables console (and optionally file) logging.

    Args:
        name: Logger name (typically __name__)
        level: Optional logging level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Configured TaskLogger instance
    """
    _ensure_comprehensive_logger_initialized()
    task_logger = ComprehensiveLogger.get_logger(name)
    if level:
        task_logger.set_level(level)
    return task_logger


def configure_logging(level: str = "INFO", debug: bool = False) -> None:
    """Apply an AgentConfig's log level to every logger of the package."""
    _ensure_comprehensive_logger_initialized()
    ComprehensiveLogger.set_level("DEBUG" if debug else level)
