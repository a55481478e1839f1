"""
Utility functions for ledgersheet.

Includes logging setup, the batching action log, and console helpers.
"""

import json
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape


# Global console for pretty output
console = Console()

ACTION_LOGGER_NAME = "ledgersheet.actions"
LOG_BATCH_SIZE = 100
LOG_FLUSH_INTERVAL_SECONDS = 10.0


def setup_logging(
    log_file: Optional[Path] = None,
    log_level: str = "INFO",
    log_format: str = "structured",
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for ledgersheet.

    Args:
        log_file: Optional path to log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured logger
    """
    logger = logging.getLogger("ledgersheet")
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    logger.handlers = []

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler: logging.Handler = RichHandler(rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(StructuredFormatter())
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ActionLog:
    """
    Batching buffer for structured action entries.

    Entries are queued and emitted through the ``ledgersheet.actions`` logger
    when the buffer reaches ``batch_size`` entries, when ``flush_interval``
    seconds have passed since the last flush, or when flush() is called.
    One instance is owned by each runtime; nothing here is module-global.
    """

    def __init__(
        self,
        batch_size: int = LOG_BATCH_SIZE,
        flush_interval: float = LOG_FLUSH_INTERVAL_SECONDS,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._logger = logger or logging.getLogger(ACTION_LOGGER_NAME)
        self._clock = clock
        self._buffer: list[dict[str, Any]] = []
        self._last_flush = clock()

    @property
    def pending(self) -> list[dict[str, Any]]:
        return list(self._buffer)

    def record(self, action: str, status: str = "info", **fields: Any) -> dict[str, Any]:
        """Queue an action entry, flushing when the batch is due."""
        entry = {
            "ts_iso": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "status": status,
        }
        entry.update({k: v for k, v in fields.items() if v is not None})
        self._buffer.append(entry)

        due = (self._clock() - self._last_flush) > self._flush_interval
        if len(self._buffer) >= self._batch_size or due:
            self.flush()
        return entry

    def flush(self) -> int:
        """Emit all queued entries. Returns the number flushed."""
        entries, self._buffer = self._buffer, []
        self._last_flush = self._clock()
        for entry in entries:
            level = logging.ERROR if entry["status"] == "error" else logging.INFO
            self._logger.log(
                level,
                f"{entry['action']} ({entry['status']})",
                extra={"event": entry["action"], "metadata": entry},
            )
        return len(entries)


def sanitize_error_message(error: Exception, max_length: int = 500) -> str:
    """
    Sanitize an error message for logs and job records.

    Truncates long messages and masks bearer tokens.
    """
    message = str(error) or type(error).__name__

    if len(message) > max_length:
        message = message[:max_length] + "..."

    message = re.sub(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", message)
    return message


def format_duration(duration_ms: Optional[int]) -> str:
    """
    Format a job duration for the console.

    Args:
        duration_ms: Duration in milliseconds (None for a job still running)

    Returns:
        "-", "850ms", "12.4s" or "3m 05s"
    """
    if duration_ms is None:
        return "-"
    if duration_ms < 1000:
        return f"{duration_ms}ms"
    seconds = duration_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs:02d}s"


def print_success(message: str) -> None:
    """Print success message to console."""
    console.print(f"[bold green]✓[/bold green] {escape(message)}")


def print_error(message: str) -> None:
    """Print error message to console."""
    console.print(f"[bold red]✗[/bold red] {escape(message)}")


def print_warning(message: str) -> None:
    """Print warning message to console."""
    console.print(f"[bold yellow]⚠[/bold yellow] {escape(message)}")
