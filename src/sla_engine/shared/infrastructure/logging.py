"""
Structured Logging
==================

JSON logs for the SLA engine. Every record carries the service name and
environment; request records also carry the correlation id, and ticket
mutations the ticket id, so a ticket's whole life can be pulled from the
log aggregator with one query.

Usage:
    from sla_engine.shared.infrastructure.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Ticket escalated", extra={"ticket_id": "TKT-001", "level": 2})
"""

import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

_REDACTED_KEYS = ("password", "api_key", "secret", "authorization")
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "apscheduler", "watchdog", "httpx")


class SLAJsonFormatter(jsonlogger.JsonFormatter):
    """Stamps UTC timestamp, service and environment; masks credential-like keys."""

    def __init__(self, *args: Any, service: str = "sla-engine", environment: str = "development", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._service = service
        self._environment = environment

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        log_record["level"] = record.levelname
        log_record["service"] = self._service
        log_record["environment"] = self._environment

        for key in list(log_record):
            if any(marker in key.lower() for marker in _REDACTED_KEYS):
                log_record[key] = "***REDACTED***"


def setup_logging(
    level: str = "INFO",
    environment: str = "development",
    service: str = "sla-engine",
) -> None:
    """Route the root logger to stdout as JSON at the given level."""
    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(SLAJsonFormatter(
        "%(asctime)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        service=service,
        environment=environment,
    ))
    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


@contextmanager
def log_latency(logger: logging.Logger, operation: str, **extra_context: Any):
    """
    Logs `<operation> completed` with its latency once the block exits.

    Usage:
        with log_latency(logger, "escalation_sweep", tickets=len(batch)):
            await sweeper.sweep()
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        logger.info(
            f"{operation} completed",
            extra={
                "operation": operation,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                **extra_context,
            },
        )
