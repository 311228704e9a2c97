"""Structured logging for inboxwatch.

Call sites keep using ``logging.getLogger(__name__)``; structlog's
``ProcessorFormatter`` renders their records as colored text (dev default) or
JSON lines (``LOG_FORMAT=json``).

Every record carries:
- ``service``: the process identity passed to ``configure_logging()``
- ``server_name`` (and any other field) bound by ``delivery_context()`` for
  the duration of one webhook delivery
- ``trace_id`` / ``span_id`` of the current OpenTelemetry span
"""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace

SERVICE_NAME = "inboxwatch"

# httpx logs every Gmail and JWKS request line at INFO.
_HTTP_CLIENT_LOGGERS = ("httpx", "httpcore")


def delivery_context(server_name: str | None, **fields: Any) -> AbstractContextManager:
    """Bind *server_name* and *fields* to every log record inside the block."""
    return structlog.contextvars.bound_contextvars(server_name=server_name, **fields)


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


def service_processor(service_name: str) -> structlog.types.Processor:
    """Return a processor stamping ``service`` onto records that lack one."""

    def add_service(
        logger: logging.Logger,  # noqa: ARG001
        method_name: str,  # noqa: ARG001
        event_dict: dict,
    ) -> dict:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service


def _shared_processors(service_name: str, time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        service_processor(service_name),
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _handler(
    handler: logging.Handler,
    renderer: structlog.types.Processor,
    shared: list[structlog.types.Processor],
) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared,
        )
    )
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Path | None = None,
    service_name: str = SERVICE_NAME,
) -> None:
    """Configure structured logging for the process.

    Replaces any handlers already installed on the root logger, so calling it
    twice does not duplicate output. When *log_file* is given, JSON lines are
    also appended there (parent directories are created).
    """
    json_shared = _shared_processors(service_name, "iso")
    if fmt == "json":
        console_shared = json_shared
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        console_shared = _shared_processors(service_name, "%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), renderer, console_shared))
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = _handler(
            logging.FileHandler(log_file), structlog.processors.JSONRenderer(), json_shared
        )
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

    for name in _HTTP_CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*console_shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
