"""Utility modules for journalq."""

from journalq.utils.logging import (
    get_logger,
    get_log_buffer,
    configure_logging,
    LogLevel,
    LogEntry,
    AppLogger,
    queue_logger,
    worker_logger,
    backend_logger,
    api_logger,
)

__all__ = [
    "get_logger",
    "get_log_buffer",
    "configure_logging",
    "LogLevel",
    "LogEntry",
    "AppLogger",
    "queue_logger",
    "worker_logger",
    "backend_logger",
    "api_logger",
]
