"""
Centralized logging for the job subsystem.

Every message goes to Python logging and to an in-memory buffer so the
stats endpoint can show recent errors and warnings without external log
aggregation.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from collections import deque
from enum import Enum
from threading import Lock


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class LogEntry:
    """A single log entry."""

    def __init__(
        self,
        level: LogLevel,
        message: str,
        source: str = "system",
        metadata: Optional[Dict[str, Any]] = None
    ):
        self.timestamp = datetime.now(timezone.utc)
        self.level = level
        self.message = message
        self.source = source
        self.metadata = metadata or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "source": self.source,
            "metadata": self.metadata
        }


class LogBuffer:
    """
    Thread-safe circular buffer of recent log entries.

    Sync handlers log from worker threads, so every access takes the lock.
    """

    def __init__(self, max_size: int = 1000):
        self._buffer: deque = deque(maxlen=max_size)
        self._lock = Lock()
        self._error_count = 0
        self._warning_count = 0

    def add(self, entry: LogEntry):
        with self._lock:
            self._buffer.append(entry)
            if entry.level in (LogLevel.ERROR, LogLevel.CRITICAL):
                self._error_count += 1
            elif entry.level == LogLevel.WARNING:
                self._warning_count += 1

    def get_recent(
        self,
        limit: int = 100,
        level: Optional[LogLevel] = None,
        source: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Most recent entries first, optionally filtered by level and source."""
        with self._lock:
            entries = list(self._buffer)

        if level:
            entries = [e for e in entries if e.level == level]
        if source:
            entries = [e for e in entries if e.source == source]

        entries.reverse()
        return [e.to_dict() for e in entries[:limit]]

    def get_errors(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            entries = [
                e for e in self._buffer
                if e.level in (LogLevel.ERROR, LogLevel.CRITICAL)
            ]
        entries.reverse()
        return [e.to_dict() for e in entries[:limit]]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            by_level: Dict[str, int] = {}
            by_source: Dict[str, int] = {}
            for entry in self._buffer:
                by_level[entry.level.value] = by_level.get(entry.level.value, 0) + 1
                by_source[entry.source] = by_source.get(entry.source, 0) + 1

            return {
                "total": len(self._buffer),
                "by_level": by_level,
                "by_source": by_source,
                "error_count": self._error_count,
                "warning_count": self._warning_count
            }


_log_buffer = LogBuffer()


def get_log_buffer() -> LogBuffer:
    """Get the process-wide log buffer."""
    return _log_buffer


class AppLogger:
    """
    Logger that writes to both Python logging and the in-memory buffer.

    Keyword arguments become structured metadata:

        worker_logger.info("Job claimed", job_id=job.id, attempt=job.attempts)
    """

    def __init__(self, source: str):
        self.source = source
        self._logger = logging.getLogger(f"journalq.{source}")

    def _log(
        self,
        level: LogLevel,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        exc_info: bool = False
    ):
        _log_buffer.add(LogEntry(level, message, self.source, metadata))

        log_level = getattr(logging, level.value.upper())
        extra_msg = f" | {metadata}" if metadata else ""
        self._logger.log(log_level, f"{message}{extra_msg}", exc_info=exc_info)

    def debug(self, message: str, **metadata):
        self._log(LogLevel.DEBUG, message, metadata or None)

    def info(self, message: str, **metadata):
        self._log(LogLevel.INFO, message, metadata or None)

    def warning(self, message: str, **metadata):
        self._log(LogLevel.WARNING, message, metadata or None)

    def error(self, message: str, **metadata):
        self._log(LogLevel.ERROR, message, metadata or None)

    def exception(self, message: str, **metadata):
        """Log at ERROR with the active traceback attached."""
        self._log(LogLevel.ERROR, message, metadata or None, exc_info=True)

    def critical(self, message: str, **metadata):
        self._log(LogLevel.CRITICAL, message, metadata or None)


def get_logger(source: str) -> AppLogger:
    """Get an AppLogger for a specific source/module."""
    return AppLogger(source)


def configure_logging(level: str = "INFO"):
    """Install a basic stream handler for process entrypoints."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


# Pre-configured loggers for the subsystem's sources
queue_logger = AppLogger("queue")
worker_logger = AppLogger("worker")
backend_logger = AppLogger("backend")
api_logger = AppLogger("api")
