"""
Log output for builds.

The engine only ever logs through module-level ``logging.getLogger(__name__)``
loggers under the ``imagebuilder`` namespace; this module decides where those
records go. ``ImageBuilder(setup_logging=True)`` calls ``configure_logging``
with the active LogSettings; embedding applications may call it themselves
or leave the ``imagebuilder`` logger to their own configuration.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from imagebuilder.settings import LogSettings, get_settings

ROOT_LOGGER = "imagebuilder"

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Extra attributes set by LoggingEventSink and retry/poll log calls
EVENT_ATTRS = (
    "event", "step", "step_index", "rule", "retry", "delay", "attempts",
    "state", "handle", "outcome", "error", "duration_ms",
)

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with provisioning event fields inlined."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        payload.update({attr: getattr(record, attr) for attr in EVENT_ATTRS if hasattr(record, attr)})

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def _console_formatter(settings: LogSettings) -> logging.Formatter:
    if settings.format == "json":
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT)


def configure_logging(settings: Optional[LogSettings] = None) -> logging.Logger:
    """
    Route ``imagebuilder`` log records to the console and an optional file.

    Replaces handlers installed by an earlier call. The file handler always
    writes JSON so build logs stay machine-readable.

    Args:
        settings: Log settings (default: get_settings().logging)

    Returns:
        The ``imagebuilder`` logger
    """
    settings = settings or get_settings().logging

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, settings.level.upper(), logging.INFO))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setFormatter(_console_formatter(settings))
    logger.addHandler(console)

    if settings.file:
        log_file = RotatingFileHandler(settings.file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS)
        log_file.setFormatter(JSONFormatter())
        logger.addHandler(log_file)

    logger.debug(f"Logging configured: level={settings.level} format={settings.format} file={settings.file or '-'}")
    return logger
