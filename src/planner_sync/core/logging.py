"""Structured logging for the planner sync service.

Every ``logging.getLogger(__name__)`` call site is rendered through structlog's
``ProcessorFormatter``, either as coloured console text (``text``) or as JSON
lines (``json``).  Records carry the origin of the running sync cycle
(``timer``, ``request`` or ``manual``) and the current OTel trace/span ids.

OAuth material must never reach a log sink, so every handler installed here
runs :class:`CredentialRedactionFilter` before formatting.

With a log root configured, JSON copies are written to ``planner.log``
(application records) and ``http.log`` (httpx / uvicorn transport records).
"""

from __future__ import annotations

import logging
import os
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

from planner_sync.errors import redact_credential_values

APP_LOG_FILE = "planner.log"
TRANSPORT_LOG_FILE = "http.log"

LOG_ROOT_ENV = "PLANNER_LOG_ROOT"
DISABLE_FILE_LOGGING_ENV = "PLANNER_DISABLE_FILE_LOGGING"

_TRANSPORT_LOGGERS = ("uvicorn.access", "uvicorn.error", "httpx", "httpcore")
_DISABLED_VALUES = {"", "0", "none", "off", "false"}

_BEARER = re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9\-._~+/]+=*")

# ---------------------------------------------------------------------------
# Sync origin
# ---------------------------------------------------------------------------

_sync_origin: ContextVar[str | None] = ContextVar("sync_origin", default=None)


def set_sync_origin(origin: str | None) -> None:
    _sync_origin.set(origin)


def get_sync_origin() -> str | None:
    return _sync_origin.get()


@contextmanager
def sync_origin_scope(origin: str) -> Iterator[None]:
    """Tag every record logged inside the block with *origin*."""
    token = _sync_origin.set(origin)
    try:
        yield
    finally:
        _sync_origin.reset(token)


def add_sync_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    origin = _sync_origin.get()
    if origin is not None:
        event_dict["sync_origin"] = origin
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Copy the active span's trace and span ids into the record, if any."""
    span_context = trace.get_current_span().get_span_context()
    if span_context and span_context.trace_id:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


class CredentialRedactionFilter(logging.Filter):
    """Scrub bearer tokens and OAuth form/JSON values from log messages.

    The message is interpolated first so that secrets passed as ``%s``
    arguments are caught too; when anything was redacted the interpolated
    text replaces ``msg`` and ``args`` is cleared.  Records are never dropped.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not isinstance(record.msg, str):
            return True
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = _BEARER.sub(r"\1 [REDACTED]", redact_credential_values(message))
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def resolve_log_root(configured: str | Path | None) -> Path | None:
    """Pick the directory for JSON log files.

    ``PLANNER_DISABLE_FILE_LOGGING=1`` turns file logging off.  Otherwise
    ``PLANNER_LOG_ROOT`` overrides *configured*; ``none`` or an empty value
    disables it.
    """
    disabled = os.environ.get(DISABLE_FILE_LOGGING_ENV, "").strip().lower()
    if disabled and disabled not in _DISABLED_VALUES:
        return None

    override = os.environ.get(LOG_ROOT_ENV)
    if override is not None:
        override = override.strip()
        return None if override.lower() in _DISABLED_VALUES else Path(override)
    return Path(configured) if configured else None


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_sync_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _handler(
    handler: logging.Handler,
    renderer: structlog.types.Processor,
    pre_chain: list[structlog.types.Processor],
) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )
    handler.addFilter(CredentialRedactionFilter())
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Install console (and optional JSON file) handlers on the root logger.

    Safe to call more than once: previously installed root handlers are
    replaced, not duplicated.
    """
    json_output = fmt == "json"
    console_chain = _pre_chain("iso" if json_output else "%H:%M:%S")
    console_renderer = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), console_renderer, console_chain))
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        directory = Path(log_root)
        directory.mkdir(parents=True, exist_ok=True)
        file_chain = _pre_chain("iso")
        json_renderer = structlog.processors.JSONRenderer()

        app_handler = _handler(
            logging.FileHandler(directory / APP_LOG_FILE), json_renderer, file_chain
        )
        app_handler.setLevel(logging.DEBUG)
        root.addHandler(app_handler)

        transport_handler = _handler(
            logging.FileHandler(directory / TRANSPORT_LOG_FILE), json_renderer, file_chain
        )
        transport_handler.setLevel(logging.DEBUG)
        for name in _TRANSPORT_LOGGERS:
            logging.getLogger(name).addHandler(transport_handler)

    structlog.configure(
        processors=[*console_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
