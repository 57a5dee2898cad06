"""JSON log lines for the ledger worker."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace

# SQLAlchemy echoes every statement at INFO; the scheduler logs each job run
_WARNING_ONLY = ("sqlalchemy.engine", "aiosqlite", "apscheduler.executors.default")
_LOGURU_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class InterceptHandler(logging.Handler):
    """Send records from SQLAlchemy, aiosqlite and apscheduler to the Loguru sink."""

    def emit(self, record: logging.LogRecord) -> None:
        level: str | int = record.levelname if record.levelname in _LOGURU_LEVELS else record.levelno
        logger.bind(stdlib_logger=record.name).opt(depth=6, exception=record.exc_info).log(
            level, record.getMessage()
        )


class _JsonSink:
    def __init__(self, *, service_name: str, environment: str, version: str) -> None:
        self._static = {"service": service_name, "environment": environment, "version": version}

    def __call__(self, message: "logger.Message") -> None:
        record = message.record
        payload: Dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name.lower(),
            "message": record["message"],
            "logger": record["name"],
            **self._static,
        }
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            payload["trace_id"] = format(span_context.trace_id, "032x")
            payload["span_id"] = format(span_context.span_id, "016x")
        payload.update(record["extra"])
        if record["exception"] is not None:
            payload["exception"] = repr(record["exception"].value)
        sys.stdout.write(json.dumps(payload, default=str) + "\n")


def configure_logging(*, service_name: str, environment: str, version: str) -> None:
    """Replace Loguru's default sink with JSON on stdout and capture stdlib logging."""

    logger.remove()
    logger.add(
        _JsonSink(service_name=service_name, environment=environment, version=version),
        backtrace=False,
        diagnose=False,
    )
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _WARNING_ONLY:
        logging.getLogger(name).setLevel(logging.WARNING)
