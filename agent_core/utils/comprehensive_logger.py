"""
Comprehensive Logging System with File and Console Output

Handlers are attached once, to the ``agent_core`` package logger; every module
logger obtained through ComprehensiveLogger propagates to it, so the scheduler,
the reasoning loops and the tool registry all write to one console stream and
(optionally) one rotating ``agent_core.log`` file.

Features:
- Configurable log folder, level and rotation (via .env)
- Unicode-safe console output
- Structured ``extra`` context appended as JSON
- Exception and performance helpers
"""

import json
import logging
import logging.handlers
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional

PACKAGE_LOGGER = "agent_core"
LOG_FILE_NAME = "agent_core.log"

CONSOLE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
FILE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that replaces characters the console cannot encode."""

    def emit(self, record):
        try:
            msg = self.format(record)
            try:
                self.stream.write(msg + self.terminator)
            except UnicodeEncodeError:
                encoding = getattr(self.stream, "encoding", None) or "utf-8"
                self.stream.write(msg.encode(encoding, errors="replace").decode(encoding) + self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)


class ComprehensiveLogger:
    """
    Owns the package handlers and hands out TaskLogger wrappers.

    Usage:
        ComprehensiveLogger.initialize(log_level="DEBUG", enable_file=True)
        logger = ComprehensiveLogger.get_logger("agent_core.core.scheduler")
        logger.info("[SCHEDULER] Launching t1", extra={"task_id": "t1"})
    """

    _loggers: Dict[str, "TaskLogger"] = {}
    _handlers: List[logging.Handler] = []
    log_file: Optional[Path] = None

    @classmethod
    def initialize(
        cls,
        log_folder: Optional[str] = None,
        log_level: str = "INFO",
        enable_console: bool = True,
        enable_file: bool = False,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5
    ) -> None:
        """
        (Re)build the package handlers. Safe to call more than once.

        Args:
            log_folder: Folder for the rotating log file (default: ./logs)
            log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
            enable_console: Write to stdout
            enable_file: Write to <log_folder>/agent_core.log
            max_bytes: File size that triggers rotation
            backup_count: Rotated files kept
        """
        root = logging.getLogger(PACKAGE_LOGGER)
        for handler in cls._handlers:
            root.removeHandler(handler)
            handler.close()
        cls._handlers = []
        cls.log_file = None

        level = log_level.upper()
        root.setLevel(level)

        if enable_console:
            console = SafeStreamHandler(sys.stdout)
            console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
            cls._handlers.append(console)

        if enable_file:
            folder = Path(log_folder or "./logs")
            try:
                folder.mkdir(parents=True, exist_ok=True)
                file_handler = logging.handlers.RotatingFileHandler(
                    folder / LOG_FILE_NAME,
                    maxBytes=max_bytes,
                    backupCount=backup_count,
                    encoding='utf-8'
                )
            except OSError as e:
                root.error(f"[LOGGING] File logging disabled, cannot open {folder / LOG_FILE_NAME}: {e}")
            else:
                file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
                cls._handlers.append(file_handler)
                cls.log_file = folder / LOG_FILE_NAME

        for handler in cls._handlers:
            handler.setLevel(level)
            root.addHandler(handler)

    @classmethod
    def get_logger(cls, name: str) -> "TaskLogger":
        if name not in cls._loggers:
            cls._loggers[name] = TaskLogger(name)
        return cls._loggers[name]

    @classmethod
    def set_level(cls, level: str) -> None:
        """Change the package level and every handler's level."""
        level = level.upper()
        logging.getLogger(PACKAGE_LOGGER).setLevel(level)
        for handler in cls._handlers:
            handler.setLevel(level)


class TaskLogger:
    """Module logger with structured extras and exception/performance helpers."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

    def set_level(self, level: str) -> None:
        self.logger.setLevel(level.upper())

    def isEnabledFor(self, level: int) -> bool:
        return self.logger.isEnabledFor(level)

    def debug(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self._log(logging.DEBUG, message, extra)

    def info(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self._log(logging.INFO, message, extra)

    def warning(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self._log(logging.WARNING, message, extra)

    def error(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self._log(logging.ERROR, message, extra)

    def critical(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self._log(logging.CRITICAL, message, extra)

    def _log(self, level: int, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        if not self.logger.isEnabledFor(level):
            return
        if extra:
            message = f"{message} | {json.dumps(extra, default=str)}"
        # stacklevel points funcName/lineno at the caller of info()/error()
        self.logger.log(level, message, stacklevel=3)

    def log_exception(self, message: str, exc: Optional[BaseException] = None) -> None:
        """
        Log an error with its full traceback.

        Args:
            message: Error message
            exc: Exception object (uses the exception being handled if None)
        """
        if exc is not None:
            tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        else:
            tb = traceback.format_exc()
        self.logger.error(f"{message}\n{tb}", stacklevel=2)

    def log_performance(
        self,
        operation: str,
        duration_seconds: float,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log how long an operation took.

        Args:
            operation: Operation name (e.g. "scheduler.run", "tool.fetch_url")
            duration_seconds: Wall-clock duration
            success: Whether the operation succeeded (failures log at WARNING)
            metadata: Additional fields for the structured extra
        """
        extra = {**(metadata or {}), "operation": operation,
                 "duration_seconds": round(duration_seconds, 3), "success": success}
        status = "OK" if success else "FAILED"
        message = f"[{status}] {operation} completed in {duration_seconds:.2f}s"
        self._log(logging.INFO if success else logging.WARNING, message, extra)
