"""
arbvault - Structured Logging Configuration

Settlement components log through ``logging.getLogger(__name__)`` and pass
their context in ``extra`` (``event``, ``order_key``, ``token`` ...). This
module turns those records into one JSON object per line:

    {"timestamp": "...", "level": "info", "logger": "arbvault.core.defi...",
     "message": "Arbitrage order finalized", "event": "settlement.order_finalized",
     "component": "settlement", "network": "testnet", "order_key": "0x1a2b..."}

``configure_logging`` is called when an engine is built; it attaches one
handler to the ``arbvault`` logger and is a no-op once that handler exists.

Environment:
    ARBVAULT_LOG_LEVEL  level name (default INFO)
    ARBVAULT_LOG_FILE   optional rotating JSON log file
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any

from pythonjsonlogger import jsonlogger

from .config import Config

ROOT_LOGGER = "arbvault"

# Keys the engine puts in ``extra`` that identify what a record is about
CONTEXT_FIELDS = ("order_key", "token", "venue", "handle", "caller", "owner")


class SettlementJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter for settlement records.

    Adds timestamp, level, logger and network, derives ``component`` from the
    dotted ``event`` name, and drops empty context fields.
    """

    def __init__(self, network: Optional[str] = None, service_name: str = ROOT_LOGGER):
        super().__init__(fmt="%(timestamp)s %(level)s %(name)s %(message)s")
        self.network = network or Config.NETWORK_TYPE.value
        self.service_name = service_name

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        if not log_record.get("level"):
            log_record["level"] = record.levelname.lower()
        log_record["logger"] = log_record.pop("name", None) or record.name
        log_record["service"] = self.service_name
        log_record["network"] = self.network

        event = log_record.get("event") or f"{record.module}.{record.funcName}"
        log_record["event"] = event
        log_record["component"] = event.split(".", 1)[0]

        for key in CONTEXT_FIELDS:
            if key in log_record and log_record[key] in (None, ""):
                del log_record[key]

        if record.exc_info and "exc_info" not in log_record:
            log_record["exc_info"] = self.formatException(record.exc_info)


def _is_settlement_handler(handler: logging.Handler) -> bool:
    return isinstance(handler.formatter, SettlementJsonFormatter)


def configure_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    stream=None,
    max_bytes: int = 50 * 1024 * 1024,  # 50MB
    backup_count: int = 5,
) -> logging.Logger:
    """
    Attach the JSON handler to the ``arbvault`` logger.

    Args:
        level: Logging level name; defaults to ``Config.LOG_LEVEL``
        log_file: Rotating log file; defaults to ``Config.LOG_FILE``, console
            (``stream`` or stdout) when empty
        max_bytes: Maximum log file size before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The package root logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    if any(_is_settlement_handler(h) for h in logger.handlers):
        return logger

    level_name = (level or Config.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, None)
    if not isinstance(log_level, int):
        raise ValueError(f"unknown log level {level_name!r}")
    logger.setLevel(log_level)

    target = log_file if log_file is not None else Config.LOG_FILE
    if target:
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.handlers.RotatingFileHandler(
            filename=str(path), maxBytes=max_bytes, backupCount=backup_count
        )
    else:
        handler = logging.StreamHandler(stream or sys.stdout)

    handler.setLevel(log_level)
    handler.setFormatter(SettlementJsonFormatter())
    logger.addHandler(handler)
    return logger


def reset_logging() -> None:
    """Detach handlers added by ``configure_logging``."""
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in [h for h in logger.handlers if _is_settlement_handler(h)]:
        logger.removeHandler(handler)
        handler.close()
