"""structlog setup shared by the daemon and the CLI.

Every stdlib ``logging`` record goes through a structlog ``ProcessorFormatter``
and picks up the service name and the current OTel trace/span ids. The console
renders ``text`` (coloured) or ``json``; with ``log_root`` set, JSON lines are
also written to ``<log_root>/questline/<service>.log`` and, for HTTP client and
server records, ``<log_root>/transport/<service>.log``.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_service_context: ContextVar[str | None] = ContextVar("service_name", default=None)

# Quieted to WARNING on the console and mirrored into the transport log
_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
    "alembic.runtime.migration",
)

_CONSOLE = {
    "json": (structlog.processors.JSONRenderer, "iso"),
    "text": (structlog.dev.ConsoleRenderer, "%H:%M:%S"),
}


def set_service_context(name: str) -> None:
    _service_context.set(name)


def get_service_context() -> str | None:
    return _service_context.get()


def add_service_context(logger, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    event_dict["service"] = _service_context.get()
    return event_dict


def add_otel_context(logger, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    """Stamp ``trace_id``/``span_id``; all zeros outside a span."""
    ctx = trace.get_current_span().get_span_context()
    event_dict["trace_id"] = trace.format_trace_id(ctx.trace_id)
    event_dict["span_id"] = trace.format_span_id(ctx.span_id)
    return event_dict


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_service_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(renderer: structlog.types.Processor, time_fmt: str) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_pre_chain(time_fmt),
    )


def _json_file(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    service_name: str | None = None,
) -> None:
    """(Re)configure the root logger; safe to call more than once.

    Unknown *fmt* values fall back to ``text``. *service_name* names the log
    files and is stamped on every record as ``service``.
    """
    if service_name:
        set_service_context(service_name)

    renderer_cls, time_fmt = _CONSOLE.get(fmt, _CONSOLE["text"])
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer_cls(), time_fmt))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    noisy = [logging.getLogger(name) for name in _NOISE_LOGGERS]
    for noise in noisy:
        noise.setLevel(logging.WARNING)

    if log_root is not None:
        file_name = f"{service_name or 'questline'}.log"
        root.addHandler(_json_file(Path(log_root) / "questline" / file_name))
        transport = _json_file(Path(log_root) / "transport" / file_name)
        for noise in noisy:
            noise.addHandler(transport)

    structlog.configure(
        processors=[*_pre_chain(time_fmt), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
