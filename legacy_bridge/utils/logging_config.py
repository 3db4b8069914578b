"""
Logging setup for the application and the migrator.

Console and rotating-file handlers are driven by the monitoring config keys
(``LOG_LEVEL``, ``LOG_FORMAT``, ``LOG_DIR``, ``ENABLE_FILE_LOGGING``,
``ENABLE_CONSOLE_LOGGING``). Structured fields passed through ``extra=`` are
kept by the JSON formatter and appended by the text formatter.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Iterator

from flask import Flask

PACKAGE_LOGGER = "legacy_bridge"

_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys() | {"message", "asctime"}
)
_HANDLER_MARKER = "_legacy_bridge_handler"


def _extra_fields(record: logging.LogRecord) -> dict:
    return {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, including ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s [%(name)s] %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = _extra_fields(record)
        if not fields:
            return base
        rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        return f"{base} | {rendered}"


def build_formatter(log_format: str | None) -> logging.Formatter:
    return JSONFormatter() if (log_format or "json").lower() == "json" else TextFormatter()


def setup_logging(app: Flask) -> None:
    """
    Configure the Flask app logger and the ``legacy_bridge`` logger tree.

    Safe to call repeatedly; handlers installed by a previous call are replaced.
    """
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    formatter = build_formatter(app.config.get("LOG_FORMAT"))

    handlers: list[logging.Handler] = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        handlers.append(console)
    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "legacy_bridge.log"),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for logger in (app.logger, logging.getLogger(PACKAGE_LOGGER)):
        for handler in list(logger.handlers):
            if getattr(handler, _HANDLER_MARKER, False):
                logger.removeHandler(handler)
                handler.close()
        for handler in handlers:
            setattr(handler, _HANDLER_MARKER, True)
            logger.addHandler(handler)
        logger.setLevel(level)

    logging.getLogger(PACKAGE_LOGGER).propagate = False
    app.logger.debug("Logging configured (level=%s, handlers=%d)", logging.getLevelName(level), len(handlers))


@contextmanager
def step_log_file(app: Flask, step: str) -> Iterator[str | None]:
    """Mirror package logs into ``LOG_DIR/migration-<step>.log`` while the block runs."""
    log_dir = app.config.get("LOG_DIR")
    if not log_dir or not app.config.get("ENABLE_FILE_LOGGING", False):
        yield None
        return
    os.makedirs(log_dir, exist_ok=True)
    path = os.path.join(log_dir, f"migration-{step.lower()}.log")
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(build_formatter(app.config.get("LOG_FORMAT")))
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.addHandler(handler)
    try:
        yield path
    finally:
        logger.removeHandler(handler)
        handler.close()
