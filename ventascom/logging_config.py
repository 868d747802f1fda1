# Logging configuration - rotating file, console, error alerting, task-scoped adapter

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Callable

LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
LOG_FILE = LOG_DIR / "ventascom.log"
LOG_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
LOG_BACKUP_COUNT = 5

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Called with (message, level) when an ERROR is logged
_error_alert_callback: Optional[Callable[[str, str], None]] = None


def set_error_alert_callback(callback: Optional[Callable[[str, str], None]]):
    """Set a callback(message, level) for error alerting."""
    global _error_alert_callback
    _error_alert_callback = callback


class ErrorAlertHandler(logging.Handler):
    """Handler that invokes the alert callback on ERROR and CRITICAL."""

    def emit(self, record: logging.LogRecord):
        if record.levelno >= logging.ERROR and _error_alert_callback:
            try:
                _error_alert_callback(self.format(record), record.levelname)
            except Exception:
                self.handleError(record)


class TaskLoggerAdapter(logging.LoggerAdapter):
    """Prefixes messages with the processing task id"""

    def process(self, msg, kwargs):
        return f"[task {self.extra.get('task_id', '-')}] {msg}", kwargs


def task_logger(logger: logging.Logger, task_id: str) -> TaskLoggerAdapter:
    return TaskLoggerAdapter(logger, {'task_id': task_id})


def setup_logging(
    log_path: Optional[Path] = None,
    max_bytes: int = LOG_MAX_BYTES,
    backup_count: int = LOG_BACKUP_COUNT,
    console: bool = True,
    level: int = logging.INFO,
) -> None:
    """
    Configure logging with file rotation, optional console and error alerting.
    Safe to call more than once; previous root handlers are replaced.
    """
    log_path = Path(log_path or LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    alert_handler = ErrorAlertHandler()
    alert_handler.setLevel(logging.ERROR)
    alert_handler.setFormatter(formatter)
    root.addHandler(alert_handler)

    # Library chatter
    logging.getLogger("urllib3").setLevel(logging.WARNING)
