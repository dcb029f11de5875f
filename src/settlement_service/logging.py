"""
Structured JSON logging for the settlement service.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import UTC, datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any

ROOT_LOGGER_NAME = "settlement_service"

VALID_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

# Keys that identify a settlement; promoted to top-level fields of a record.
CORRELATION_KEYS: tuple[str, ...] = (
    "task_id",
    "executor_id",
    "assignment_id",
    "contract_id",
    "escrow_id",
    "dispute_id",
)

_STANDARD_ATTRS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JSONFormatter(logging.Formatter):
    """
    Formats records as one JSON object per line.

    Settlement identifiers passed through ``extra={...}`` (see
    ``CORRELATION_KEYS``) become top-level fields so one grep follows a task
    from selection to payout. Everything else lands under ``extra``.
    """

    def __init__(self, service_name: str | None = None) -> None:
        super().__init__()
        self._service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        timestamp = datetime.fromtimestamp(record.created, tz=UTC).strftime(
            "%Y-%m-%dT%H:%M:%S.%fZ"
        )

        log_data: dict[str, Any] = {
            "timestamp": timestamp,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self._service_name is not None:
            log_data["service"] = self._service_name

        extra = {key: value for key, value in record.__dict__.items() if key not in _STANDARD_ATTRS}
        for key in CORRELATION_KEYS:
            if extra.get(key) is not None:
                log_data[key] = extra.pop(key)
        if extra:
            log_data["extra"] = extra

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class DailyRotatingFileHandler(TimedRotatingFileHandler):
    """
    Writes to ``<prefix>-YYYY-MM-DD.log`` and starts a new file at UTC midnight.

    Only the newest ``retention_days`` files with the prefix are kept; older
    ones are deleted on rollover.
    """

    def __init__(self, directory: str, prefix: str, retention_days: int) -> None:
        self._log_directory = directory
        self._prefix = prefix
        filename = self._make_filename()
        super().__init__(filename, when="midnight", utc=True, backupCount=retention_days)

    def _make_filename(self) -> str:
        today = datetime.now(tz=UTC).strftime("%Y-%m-%d")
        return os.path.join(self._log_directory, f"{self._prefix}-{today}.log")

    def doRollover(self) -> None:  # noqa: N802
        if self.stream:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]
        self.baseFilename = os.path.abspath(self._make_filename())
        for expired in self.expired_files():
            expired.unlink(missing_ok=True)
        if not self.delay:
            self.stream = self._open()
        current_time = int(time.time())
        self.rolloverAt = self.computeRollover(current_time)

    def expired_files(self) -> list[Path]:
        """Log files of this prefix beyond the retention window, oldest first."""
        if self.backupCount <= 0:
            return []
        files = sorted(Path(self._log_directory).glob(f"{self._prefix}-????-??-??.log"))
        current = Path(self.baseFilename).name
        kept = [path for path in files if path.name != current]
        # The current file counts towards retention
        excess = len(kept) - (self.backupCount - 1)
        return kept[:excess] if excess > 0 else []


def setup_logging(
    level: str,
    service_name: str,
    log_directory: str,
    retention_days: int = 14,
) -> logging.Logger:
    """
    Configure structured JSON logging for the service.

    Logs to both stdout and a daily rotating file in log_directory.
    Every module logger obtained through get_logger() hangs below the
    package root logger, so one call configures all of them.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Service name stamped on every record and used as file prefix
        log_directory: Directory for rotating log files
        retention_days: Number of daily files to keep, 0 keeps all

    Returns:
        Configured root logger of the package

    Raises:
        ValueError: If level is not a valid log level
    """
    level_upper = level.upper()
    if level_upper not in VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level}. Must be one of {sorted(VALID_LOG_LEVELS)}")

    numeric_level = getattr(logging, level_upper)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(numeric_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = JSONFormatter(service_name)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(numeric_level)
    stdout_handler.setFormatter(formatter)
    logger.addHandler(stdout_handler)

    os.makedirs(log_directory, exist_ok=True)
    file_handler = DailyRotatingFileHandler(
        directory=log_directory, prefix=service_name, retention_days=retention_days
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the service namespace.

    Module names inside the package (``settlement_service.services.x``) are
    used as-is; anything else is nested below the package root.
    """
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
