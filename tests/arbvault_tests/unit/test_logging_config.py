"""
Unit tests for structured JSON logging.
"""

import io
import json
import logging

import pytest

from arbvault.core.logging_config import (
    ROOT_LOGGER,
    SettlementJsonFormatter,
    configure_logging,
    reset_logging,
)
from settlement_world import build_world


@pytest.fixture(autouse=True)
def clean_logging():
    reset_logging()
    yield
    reset_logging()


def _record(msg="Order settled", **extra):
    record = logging.LogRecord("arbvault.core.defi.settlement_engine", logging.INFO, __file__, 10, msg, None, None, func="settle")
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_formatter_emits_settlement_fields():
    formatter = SettlementJsonFormatter(network="staging")

    payload = json.loads(
        formatter.format(_record(event="settlement.order_finalized", order_key="0xabc", token=""))
    )

    assert payload["message"] == "Order settled"
    assert payload["level"] == "info"
    assert payload["logger"] == "arbvault.core.defi.settlement_engine"
    assert payload["network"] == "staging"
    assert payload["service"] == "arbvault"
    assert payload["event"] == "settlement.order_finalized"
    assert payload["component"] == "settlement"
    assert payload["order_key"] == "0xabc"
    assert "token" not in payload
    assert "timestamp" in payload


def test_formatter_derives_event_when_missing():
    payload = json.loads(SettlementJsonFormatter().format(_record()))

    assert payload["event"] == "test_logging_config.settle"
    assert payload["component"] == "test_logging_config"


def test_configure_logging_is_idempotent():
    stream = io.StringIO()

    first = configure_logging(level="DEBUG", log_file="", stream=stream)
    again = configure_logging(level="ERROR", log_file="")

    assert first is again is logging.getLogger(ROOT_LOGGER)
    assert first.level == logging.DEBUG
    assert sum(isinstance(h.formatter, SettlementJsonFormatter) for h in first.handlers) == 1


def test_configure_logging_writes_rotating_file(tmp_path):
    log_file = tmp_path / "logs" / "settlement.json"
    logger = configure_logging(level="INFO", log_file=str(log_file))

    logging.getLogger("arbvault.core.defi.flash_loans").info(
        "Flash loan repaid", extra={"event": "flash_loan.repaid", "premium": 9}
    )
    for handler in logger.handlers:
        handler.flush()

    payload = json.loads(log_file.read_text().strip().splitlines()[-1])
    assert payload["event"] == "flash_loan.repaid"
    assert payload["component"] == "flash_loan"
    assert payload["premium"] == 9


def test_unknown_level_rejected():
    with pytest.raises(ValueError):
        configure_logging(level="chatty", log_file="")


def test_engine_logs_settlement_as_json():
    stream = io.StringIO()
    configure_logging(level="INFO", log_file="", stream=stream)
    world = build_world()

    key = world.create_order()
    world.execute(key)

    events = [line["event"] for line in _lines(stream)]
    assert "settlement.engine_initialized" in events
    assert "settlement.order_created" in events
    finalized = [line for line in _lines(stream) if line["event"] == "settlement.order_finalized"]
    assert finalized[-1]["state"] == "settled"
    assert finalized[-1]["order_key"] == key[:12]


def test_engine_construction_configures_logging():
    build_world()

    handlers = logging.getLogger(ROOT_LOGGER).handlers
    assert any(isinstance(h.formatter, SettlementJsonFormatter) for h in handlers)
