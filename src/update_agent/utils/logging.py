"""Rotating logger setup and in-memory log buffer for the agent."""

import logging
from collections import deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_LEVEL_NAMES = (
    (logging.ERROR, "error"),
    (logging.WARNING, "warning"),
    (logging.INFO, "info"),
    (logging.DEBUG, "debug"),
)


def level_name(levelno: int) -> str:
    """Map a logging level number onto the /log API level names."""
    for threshold, name in _LEVEL_NAMES:
        if levelno >= threshold:
            return name
    return "trace"


class MemoryLogHandler(logging.Handler):
    """Keeps the latest log records in memory for the /log endpoint."""

    def __init__(self, capacity: int = 1000, level: int = logging.NOTSET):
        super().__init__(level)
        self.records: deque = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            data = getattr(record, "data", None) or {}
            self.records.append(
                {
                    "level": level_name(record.levelno),
                    "message": record.getMessage(),
                    "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                    "data": {str(k): str(v) for k, v in data.items()},
                }
            )
        except Exception:
            self.handleError(record)

    def entries(self) -> list[dict]:
        return list(self.records)

    def clear(self) -> None:
        self.records.clear()


_memory_handler = MemoryLogHandler()


def get_memory_handler() -> MemoryLogHandler:
    """Return the process-wide in-memory log buffer."""
    return _memory_handler


def setup_logger(
    name: str = "update_agent",
    log_file: Optional[str] = "./logs/update-agent.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
    level: int = logging.INFO,
) -> logging.Logger:
    """Setup rotating file logger with ISO 8601 timestamps.

    Args:
        name: Logger name
        log_file: Path to log file (created if doesn't exist), None for
            console only
        max_bytes: Max size before rotation
        backup_count: Number of rotated files to keep
        level: Logging level

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid duplicate handlers if already configured
    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # In-memory buffer served by POST /log
    logger.addHandler(_memory_handler)

    return logger
