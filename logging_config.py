"""Logging configuration and the serialized error log for the Many worktree manager."""

import json
import logging
import logging.handlers
import queue
import sys
import threading
from pathlib import Path
from datetime import datetime, timezone

from config import config_dir

LOG_FILE_NAME = "many.log"
ERROR_LOG_NAME = "errors.log"
TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per line; `extra_data` fields are merged under "extra"."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        extra = getattr(record, "extra_data", None)
        if extra:
            entry["extra"] = extra
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(
    level: str = "INFO",
    log_dir: Path | None = None,
    log_to_file: bool = True,
    log_to_console: bool = True,
    json_format: bool = False,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the core process.

    Console output goes to stderr because stdout carries protocol traffic.
    The rotating file under `log_dir` (default <config dir>/logs) always
    records DEBUG and up.

    Returns:
        The root logger
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_to_file else numeric_level)
    root_logger.handlers.clear()

    formatter = JSONFormatter() if json_format else logging.Formatter(TEXT_FORMAT)

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_to_file:
        log_dir = Path(log_dir) if log_dir else config_dir() / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / LOG_FILE_NAME, maxBytes=max_file_size, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_performance(logger: logging.Logger, operation: str, duration: float, **kwargs):
    """Debug-level timing line carrying structured fields."""
    extra_data = {"operation": operation, "duration_ms": round(duration * 1000, 2), **kwargs}
    logger.debug(f"{operation} took {duration:.3f}s", extra={"extra_data": extra_data})


class _ErrorLineFormatter(logging.Formatter):
    """`[2024-01-01T00:00:00.000000+00:00] source: message`"""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        return f"[{timestamp}] {getattr(record, 'source', 'unknown')}: {record.getMessage()}"


class ErrorLog:
    """Append-only error log with exactly one writer.

    `record_error` only enqueues; a QueueListener thread owns the file and
    drains the queue, so lines from concurrent callers never interleave.
    """

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path else config_dir() / "logs" / ERROR_LOG_NAME
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._listener: logging.handlers.QueueListener | None = None
        self._file_handler: logging.FileHandler | None = None
        self._lock = threading.Lock()
        # private logger: not attached to the logging hierarchy
        self._logger = logging.Logger("many.error_log", logging.DEBUG)
        self._logger.addHandler(logging.handlers.QueueHandler(self._queue))

    def start(self) -> "ErrorLog":
        with self._lock:
            if self._listener is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._file_handler = logging.FileHandler(self.path, encoding="utf-8")
                self._file_handler.setFormatter(_ErrorLineFormatter())
                self._listener = logging.handlers.QueueListener(self._queue, self._file_handler)
                self._listener.start()
        return self

    def stop(self) -> None:
        """Drain pending lines and close the file."""
        with self._lock:
            if self._listener is not None:
                self._listener.stop()
                self._listener = None
            if self._file_handler is not None:
                self._file_handler.close()
                self._file_handler = None

    def record_error(self, source: str, message: str) -> None:
        """Enqueue one line; returns immediately."""
        self._logger.error(message, extra={"source": source})

    def reset(self) -> None:
        """Truncate the log and mark the start of a new run."""
        running = self._listener is not None
        self.stop()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("", encoding="utf-8")
        if running:
            self.start()
        self.record_error("APP_START", "Application started, error log cleared")
