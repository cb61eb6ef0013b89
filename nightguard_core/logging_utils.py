"""
Structured JSON logging for door devices.

Every record emitted by the sync engine and lifecycle manager carries the
shift it concerns. When JSON output is enabled those fields are grouped
under ``shift`` so a collector can index a whole night by venue and date.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

PACKAGE_LOGGER = "nightguard_core"

SHIFT_FIELDS = ("company_id", "venue_id", "shift_date")

_RECORD_ATTRS = set(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "taskName"}


class StructuredJsonFormatter(logging.Formatter):
    """
    Single-line JSON formatter.

    Output fields:
    - timestamp: ISO 8601 in UTC
    - level, logger, message
    - shift: {company_id, venue_id, shift_date} when the record has them
    - exception: formatted traceback, if any
    - any other ``extra`` values at top level
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        shift = {name: getattr(record, name) for name in SHIFT_FIELDS if getattr(record, name, None)}
        if shift:
            log_obj["shift"] = shift

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key in SHIFT_FIELDS or key.startswith("_"):
                continue
            log_obj[key] = value

        return json.dumps(log_obj, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str = PACKAGE_LOGGER,
) -> logging.Logger:
    """
    Send the core's logs to stdout as JSON.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: the package logger)

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)

    # Replace, don't stack, handlers when called twice
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())

    logger.addHandler(handler)
    logger.setLevel(level)

    return logger


class ShiftLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that stamps venue and shift identity on every record.

    Example:
        >>> log = ShiftLoggerAdapter.for_shift(logger, "co-1", "venue-1", "2024-03-14")
        >>> log.info("Connected")
    """

    @classmethod
    def for_shift(
        cls,
        logger: logging.Logger,
        company_id: str | None,
        venue_id: str | None,
        shift_date: str | None,
    ) -> ShiftLoggerAdapter:
        return cls(logger, {"company_id": company_id, "venue_id": venue_id, "shift_date": shift_date})

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs
