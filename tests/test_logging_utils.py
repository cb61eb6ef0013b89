"""Tests for structured JSON logging."""

from __future__ import annotations

import json
import logging

import pytest

from nightguard_core.config import CoreConfig, CosmosAuthMethod
from nightguard_core.core import NightguardCore
from nightguard_core.logging_utils import (
    PACKAGE_LOGGER,
    ShiftLoggerAdapter,
    StructuredJsonFormatter,
    configure_structured_logging,
)


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("nightguard_core.sync", logging.WARNING, __file__, 10, "Queued %d writes", (3,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def package_logger():
    logger = logging.getLogger(PACKAGE_LOGGER)
    handlers, level = list(logger.handlers), logger.level
    yield logger
    logger.handlers[:] = handlers
    logger.setLevel(level)


class TestStructuredJsonFormatter:
    """Tests for StructuredJsonFormatter."""

    def test_core_fields(self) -> None:
        payload = json.loads(StructuredJsonFormatter().format(make_record()))

        assert payload["level"] == "WARNING"
        assert payload["logger"] == "nightguard_core.sync"
        assert payload["message"] == "Queued 3 writes"
        assert "timestamp" in payload
        assert "shift" not in payload

    def test_shift_fields_grouped(self) -> None:
        record = make_record(company_id="co-1", venue_id="venue-1", shift_date="2024-03-14")

        payload = json.loads(StructuredJsonFormatter().format(record))

        assert payload["shift"] == {"company_id": "co-1", "venue_id": "venue-1", "shift_date": "2024-03-14"}
        assert "venue_id" not in payload

    def test_unset_shift_fields_omitted(self) -> None:
        record = make_record(company_id="co-1", venue_id="venue-1", shift_date=None)

        payload = json.loads(StructuredJsonFormatter().format(record))

        assert payload["shift"] == {"company_id": "co-1", "venue_id": "venue-1"}

    def test_other_extras_at_top_level(self) -> None:
        record = make_record(pending=3, device=object())

        payload = json.loads(StructuredJsonFormatter().format(record))

        assert payload["pending"] == 3
        assert isinstance(payload["device"], str)


class TestConfigureLogging:
    """Tests for logger setup."""

    def test_configure_replaces_handlers(self, package_logger: logging.Logger) -> None:
        configure_structured_logging(logging.DEBUG)
        logger = configure_structured_logging(logging.DEBUG)

        assert logger is package_logger
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, StructuredJsonFormatter)
        assert logger.level == logging.DEBUG

    def test_create_applies_json_logging(self, package_logger: logging.Logger, temp_dir) -> None:
        config = CoreConfig(
            cosmos_endpoint="https://nightguard-test.documents.azure.com:443/",
            cosmos_auth_method=CosmosAuthMethod.KEY,
            cosmos_key="test-key",
            cache_path=str(temp_dir),
            log_level="WARNING",
            log_json=True,
        )

        NightguardCore.create(config)

        assert package_logger.level == logging.WARNING
        assert isinstance(package_logger.handlers[0].formatter, StructuredJsonFormatter)

    def test_create_keeps_handlers_without_json(self, package_logger: logging.Logger, temp_dir) -> None:
        config = CoreConfig(
            cosmos_endpoint="https://nightguard-test.documents.azure.com:443/",
            cosmos_auth_method=CosmosAuthMethod.KEY,
            cosmos_key="test-key",
            cache_path=str(temp_dir),
            log_level="shouting",
        )
        handlers = list(package_logger.handlers)

        NightguardCore.create(config)

        assert package_logger.level == logging.INFO
        assert package_logger.handlers == handlers


class TestShiftLoggerAdapter:
    """Tests for the shift-stamping adapter."""

    def test_adapter_stamps_context(self, caplog) -> None:
        log = ShiftLoggerAdapter.for_shift(
            logging.getLogger("nightguard_core.test_adapter"), "co-1", "venue-1", "2024-03-14"
        )

        with caplog.at_level(logging.INFO, logger="nightguard_core.test_adapter"):
            log.info("Connected", extra={"state": "live"})

        record = caplog.records[-1]
        assert record.company_id == "co-1"
        assert record.venue_id == "venue-1"
        assert record.shift_date == "2024-03-14"
        assert record.state == "live"
