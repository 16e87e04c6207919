"""Structured logging for threadline.

Every ``logging.getLogger(__name__)`` call site is rendered through structlog's
``ProcessorFormatter``, so plain stdlib logging picks up the same fields as
``structlog.get_logger()``:

- the routing fields bound by :func:`routing_context` (organization, message,
  channel, thread)
- the OTel ``trace_id`` / ``span_id`` of the active span, when there is one

``text`` renders colored console lines, ``json`` renders one JSON object per
line. With ``log_root`` set, a JSON copy of everything goes to
``{log_root}/{service_name}.log``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from types import MappingProxyType

import structlog
from opentelemetry import trace

ROUTING_FIELDS = ("organization_id", "message_id", "channel", "thread_id")

_EMPTY: Mapping[str, str] = MappingProxyType({})
_routing_fields: ContextVar[Mapping[str, str]] = ContextVar(
    "threadline_routing_fields", default=_EMPTY
)

_NOISE_LOGGERS = ("uvicorn.access", "uvicorn.error", "asyncpg", "httpx", "httpcore")


@contextmanager
def routing_context(**fields: object) -> Iterator[Mapping[str, str]]:
    """Bind routing fields to every log line emitted inside the block.

    Nested blocks extend the outer fields; ``None`` values are skipped.

    Raises
    ------
    ValueError
        For a field name outside :data:`ROUTING_FIELDS`.
    """
    unknown = sorted(set(fields) - set(ROUTING_FIELDS))
    if unknown:
        raise ValueError(f"Unknown routing log fields: {', '.join(unknown)}")
    merged = {
        **_routing_fields.get(),
        **{name: str(value) for name, value in fields.items() if value is not None},
    }
    bound = MappingProxyType(merged)
    token = _routing_fields.set(bound)
    try:
        yield bound
    finally:
        _routing_fields.reset(token)


def current_routing_fields() -> dict[str, str]:
    return dict(_routing_fields.get())


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def add_routing_fields(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Copy bound routing fields into the event; explicit ``extra`` values win."""
    for name, value in _routing_fields.get().items():
        event_dict.setdefault(name, value)
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_routing_fields,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    service_name: str = "threadline",
) -> None:
    """Install the structlog pipeline on the root logger.

    Parameters
    ----------
    level:
        Root log level name, case-insensitive.
    fmt:
        ``"text"`` or ``"json"`` for the stderr handler.
    log_root:
        Directory for the JSON log file; created when missing.
    service_name:
        Log file stem.
    """
    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_dir = Path(log_root)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{service_name}.log")
        file_handler.setFormatter(
            _formatter(structlog.processors.JSONRenderer(), _pre_chain("iso"))
        )
        root.addHandler(file_handler)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


__all__ = [
    "ROUTING_FIELDS",
    "add_otel_context",
    "add_routing_fields",
    "configure_logging",
    "current_routing_fields",
    "routing_context",
]
