"""Structured logging for the exporter.

Every module logs through ``logging.getLogger(__name__)``; ``configure_logging``
routes those records through structlog's ProcessorFormatter so each line
carries timestamp, level, logger name, the OTel trace/span ids and, while a
snapshot build runs, the ``refresh_trigger`` that started it.

``text`` renders for a terminal; ``json`` emits one object per line. The
optional log file is always JSON.
"""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from pathlib import Path

import structlog
from opentelemetry import trace

LOG_FORMATS = ("text", "json")

_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
)

_NO_TRACE_ID = "0" * 32
_NO_SPAN_ID = "0" * 16


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = _NO_TRACE_ID
        event_dict["span_id"] = _NO_SPAN_ID
    return event_dict


def refresh_log_context(trigger: str) -> AbstractContextManager[None]:
    """Tag every record logged inside the block with ``refresh_trigger``.

    The binding lives in a context variable, so per-calendar fetch tasks
    spawned inside the block inherit it.
    """
    return structlog.contextvars.bound_contextvars(refresh_trigger=trigger)


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, timestamp_fmt: str
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_pre_chain(timestamp_fmt),
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Path | None = None,
) -> None:
    """Install the exporter's handlers on the root logger.

    Safe to call more than once; earlier handlers are closed and replaced.

    Parameters
    ----------
    level:
        Root log level name, case-insensitive. Unknown names fall back to INFO.
    fmt:
        ``"text"`` or ``"json"`` for the stderr handler.
    log_file:
        Optional JSON-lines file; parent directories are created.
    """
    if fmt not in LOG_FORMATS:
        raise ValueError(f"log format must be one of {LOG_FORMATS}, got: {fmt!r}")

    if fmt == "json":
        timestamp_fmt = "iso"
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        timestamp_fmt = "%H:%M:%S"
        renderer = structlog.dev.ConsoleRenderer()

    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(_formatter(renderer, timestamp_fmt))
    root.addHandler(console_handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
        root.addHandler(file_handler)

    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *_pre_chain(timestamp_fmt),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
