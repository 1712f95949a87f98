"""
Courier Logging Configuration
=============================

Structured logging for the crawl service. Every component logs through a
``courier.<component>`` logger; records about one source carry its id and
URL so a whole tick can be followed per source in the JSON log file.
"""

import logging
import logging.handlers
import sys
import time
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional

# Attributes every LogRecord has; anything else arrived through ``extra``
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}

# Context fields promoted to the top level of JSON records
_CONTEXT_FIELDS = ("component", "source_id", "source_url")

NOISY_LIBRARIES = ("aiohttp", "asyncio", "feedparser", "sqlite3")


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with source context at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _RECORD_ATTRIBUTES and k not in _CONTEXT_FIELDS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        # Exceptions and timedeltas show up in extras; str() them
        return json.dumps(log_data, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Colored single-line console output for operators."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        component = getattr(record, "component", None) or record.name

        line = (
            f"{color}[{timestamp}] {record.levelname:8}{self.RESET} "
            f"{component} - {record.getMessage()}"
        )

        source_url = getattr(record, "source_url", None)
        if source_url:
            line += f" ({source_url})"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)

        return line


def _console_handler(structured: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if structured else ColoredConsoleFormatter())
    return handler


def _file_handler(log_file: str, max_file_size: int, backup_count: int) -> logging.Handler:
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_file_size, backupCount=backup_count, encoding="utf-8"
    )
    # File output is always JSON
    handler.setFormatter(StructuredFormatter())
    return handler


def setup_logger(
    name: str = "courier",
    level: str = "INFO",
    log_file: Optional[str] = None,
    console: bool = True,
    structured: bool = False,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> logging.Logger:
    """Attach fresh handlers to the named logger and return it.

    The console gets colored lines unless ``structured`` is set; the
    optional file always gets JSON and rotates at ``max_file_size`` bytes,
    keeping ``backup_count`` old files.
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))

    # Reconfiguring replaces handlers instead of stacking them
    logger.handlers.clear()

    if console:
        logger.addHandler(_console_handler(structured))
    if log_file:
        logger.addHandler(_file_handler(log_file, max_file_size, backup_count))

    return logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adapter whose fixed context is merged with per-call ``extra``."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger_for_component(
    component_name: str,
    source_id: Optional[str] = None,
    source_url: Optional[str] = None,
) -> LoggerAdapter:
    """Adapter for ``courier.<component_name>``.

    ``source_id`` and ``source_url``, when given, are attached to every
    record so per-source lines can be grepped out of a tick.
    """
    context: Dict[str, Any] = {"component": component_name}
    if source_id:
        context["source_id"] = source_id
    if source_url:
        context["source_url"] = source_url

    return LoggerAdapter(logging.getLogger(f"courier.{component_name}"), context)


def configure_application_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = "logs/courier.log",
    enable_console: bool = True,
    structured_logging: bool = False,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Configure the ``courier`` logger tree and quiet chatty libraries.

    Called once by the CLI with values from the ``logging`` settings
    section; a falsy ``log_file`` means console only.
    """
    setup_logger(
        name="courier",
        level=log_level,
        log_file=log_file,
        console=enable_console,
        structured=structured_logging,
        max_file_size=max_file_size,
        backup_count=backup_count,
    )

    for library in NOISY_LIBRARIES:
        logging.getLogger(library).setLevel(logging.WARNING)


class PerformanceLogger:
    """Time a block and log how it ended.

    Usage:
        with PerformanceLogger(logger, "crawl tick") as perf:
            ...
        perf.duration  # seconds
    """

    def __init__(self, logger, operation: str, **context):
        self.logger = logger
        self.operation = operation
        self.context = context
        self.duration: Optional[float] = None
        self._started: Optional[float] = None

    def __enter__(self) -> "PerformanceLogger":
        self._started = time.monotonic()
        self.logger.debug(f"Starting {self.operation}", extra=self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.duration = time.monotonic() - self._started
        extra = dict(self.context, duration_seconds=self.duration, success=exc_type is None)

        if exc_type is None:
            self.logger.info(f"Completed {self.operation} in {self.duration:.3f}s", extra=extra)
        else:
            self.logger.error(
                f"Failed {self.operation} after {self.duration:.3f}s: {exc_type.__name__}",
                extra=extra,
            )
