from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

LOGGER_NAME = "seedgate"
CONSOLE_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def _fields(record: logging.LogRecord) -> dict[str, Any]:
    extra_fields = getattr(record, "extra_fields", None)
    return extra_fields if isinstance(extra_fields, dict) else {}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: event name, level, UTC time and the event's fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        for key, value in _fields(record).items():
            payload.setdefault(key, value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True, default=str)


class FieldsFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _fields(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        return line


def setup_logger(log_path: Path | None, level: int | str = logging.INFO) -> logging.Logger:
    """Configure the `seedgate` logger; without a path only the console handler is installed."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = False

    if log_path is not None:
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    console = logging.StreamHandler()
    console.setFormatter(FieldsFormatter(CONSOLE_FORMAT))
    logger.addHandler(console)
    return logger


def log_with_fields(logger: logging.Logger, level: int, event: str, **fields: object) -> None:
    logger.log(level, event, extra={"extra_fields": fields})
