"""
Maggrab Logging Configuration
=============================

Process logging for the daemon. This is separate from the activity log that
the dashboard reads, which lives in the store.

Records carry feed context through ``extra=``. The JSON formatter lifts the
known context keys (component, feed, collection) to the top level so a log
file can be filtered per feed with ``jq``. The console formatter prints the
feed name in front of the message.
"""

import json
import logging
import logging.handlers
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from ..config.settings import LoggingSettings


# Attributes every LogRecord has; anything else arrived through extra=
_RECORD_ATTRIBUTES = set(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}

CONTEXT_FIELDS = ("component", "feed_id", "feed_name", "collection")

_NOISY_LIBRARIES = ("aiohttp", "urllib3", "feedparser", "myjdapi", "charset_normalizer")


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRIBUTES}


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, with feed context at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        extras = _record_extras(record)
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        for field in CONTEXT_FIELDS:
            if field in extras:
                log_data[field] = extras.pop(field)

        log_data["message"] = record.getMessage()
        if extras:
            log_data["extra"] = extras
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Short colored lines: time, level, component, feed and message."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:8}"
        if self.use_color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        source = getattr(record, "component", None) or record.name
        feed_name = getattr(record, "feed_name", None)
        prefix = f"{source} [{feed_name}]" if feed_name else source

        formatted = f"[{timestamp}] {level} {prefix}: {record.getMessage()}"
        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)
        return formatted


def setup_logger(
    name: str = "maggrab",
    level: str = "INFO",
    log_file: Optional[str] = None,
    console: bool = True,
    structured: bool = False,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """Attach console and rotating-file handlers to a logger.

    The file handler always writes JSON; ``structured`` only switches the
    console between JSON and colored text. Calling it again replaces the
    handlers rather than stacking them.
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(
            StructuredFormatter() if structured else ColoredConsoleFormatter(sys.stdout.isatty())
        )
        logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_file_size, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    return logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adds fixed component/feed context; call-site ``extra`` wins on conflicts."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger_for_component(component_name: str, **context: Any) -> LoggerAdapter:
    """Logger named ``maggrab.<component>`` carrying the given context.

    Args:
        component_name: Component such as 'storage' or 'pipeline'
        **context: Extra fields for every record, e.g. feed_id, feed_name;
            None values are dropped
    """
    extra = {"component": component_name}
    extra.update({k: v for k, v in context.items() if v is not None})
    return LoggerAdapter(logging.getLogger(f"maggrab.{component_name}"), extra)


def configure_application_logging(
    settings: "LoggingSettings",
    level: Optional[str] = None,
) -> logging.Logger:
    """Configure the ``maggrab`` logger tree from logging settings.

    Args:
        settings: Logging section of the application settings
        level: Override for the configured level (e.g. DEBUG from --debug)
    """
    logger = setup_logger(
        name="maggrab",
        level=level or settings.level.value,
        log_file=settings.file_path,
        console=settings.console_logging,
        structured=settings.structured_logging,
        max_file_size=settings.max_file_size_mb * 1024 * 1024,
        backup_count=settings.backup_count,
    )

    for library in _NOISY_LIBRARIES:
        logging.getLogger(library).setLevel(logging.WARNING)

    return logger


class PerformanceLogger:
    """Times a block and logs its outcome with the collected context.

    Context can be added while the block runs, so the completion record
    carries the block's results::

        with PerformanceLogger(logger, "grab run") as perf:
            result = await run()
            perf.add_context(new_items=result.new_items)
    """

    def __init__(self, logger, operation: str, **context: Any):
        self.logger = logger
        self.operation = operation
        self.context = dict(context)
        self.duration_ms: Optional[int] = None
        self._started: Optional[float] = None

    def add_context(self, **context: Any) -> None:
        self.context.update(context)

    def __enter__(self) -> "PerformanceLogger":
        self._started = time.monotonic()
        self.logger.debug(f"Starting {self.operation}", extra=self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.duration_ms = int((time.monotonic() - self._started) * 1000)
        context = {**self.context, "duration_ms": self.duration_ms, "success": exc_type is None}

        if exc_type:
            self.logger.error(
                f"Failed {self.operation} after {self.duration_ms} ms: {exc_val}", extra=context
            )
        else:
            self.logger.info(f"Completed {self.operation} in {self.duration_ms} ms", extra=context)
