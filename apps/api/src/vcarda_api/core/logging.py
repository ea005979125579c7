"""Structured JSON logging for the loyalty core.

Loguru owns the output; stdlib loggers (uvicorn, SQLAlchemy, Celery) are routed
into it so every line carries the same service metadata and trace ids.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace

# Attributes every stdlib LogRecord carries; anything else arrived via ``extra=``.
_STANDARD_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "celery.worker.strategy")


class InterceptHandler(logging.Handler):
    """Forward stdlib records to Loguru, keeping the original caller and extras."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        extras = {key: value for key, value in vars(record).items() if key not in _STANDARD_RECORD_FIELDS}
        logger.bind(**extras).opt(depth=depth, exception=record.exc_info).log(level, "{}", record.getMessage())


def _current_trace_ids() -> Dict[str, str]:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return {}
    return {"trace_id": f"{context.trace_id:032x}", "span_id": f"{context.span_id:016x}"}


def build_log_payload(record: Dict[str, Any], metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a Loguru record into one JSON-ready document.

    Bound extras (``card_id``, ``delta`` and so on) become top-level keys so the
    log pipeline can index them without unpacking a nested object.
    """

    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "logger": record["name"],
        "message": record["message"],
    }
    for key, field_name in (("service", "service_name"), ("environment", "environment"), ("version", "version")):
        payload[key] = metadata.get(field_name, "unknown")
    payload.update(_current_trace_ids())

    exception = record["exception"]
    if exception is not None:
        payload["exception"] = exception.type.__name__ if exception.type else "unknown"

    payload.update(record["extra"] or {})
    return payload


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Replace the default Loguru sink with a JSON line writer on stdout."""

    metadata = {"service_name": service_name, "environment": environment, "version": version}

    def _json_sink(message: Any) -> None:
        sys.stdout.write(json.dumps(build_log_payload(message.record, metadata), default=str) + "\n")

    logger.remove()
    logger.add(_json_sink, level=level.upper(), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
