# src/typer_otel_metrics/logging.py
"""Logging for the instrumentation library and the CLIs it wraps.

Library modules obtain their loggers from get_logger(). Those are structlog
loggers bound to stdlib loggers under the ``typer_otel_metrics`` namespace,
so an application that never configures logging gets stdlib defaults:
warnings and errors on stderr, nothing below WARNING, nothing on stdout.
stdout belongs to the command.

configure_logging() is for applications (such as the demo) that want the
structured format. It renders structlog events and plain stdlib records
(including the OpenTelemetry SDK's) with one ProcessorFormatter on stderr.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, TextIO

import structlog
from structlog.stdlib import ProcessorFormatter

# Export and instrument registration chatter from the SDK is not useful on a
# CLI, even with --verbose.
_SDK_LOGGERS: tuple[str, ...] = (
    "opentelemetry",
    "opentelemetry.sdk.metrics",
    "opentelemetry.exporter",
)

_FORMATTER_FIELDS = ("_record", "_from_structlog")


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Bound logger that emits through the stdlib logger ``name``."""
    logger: structlog.stdlib.BoundLogger = structlog.wrap_logger(
        logging.getLogger(name),
        wrapper_class=structlog.stdlib.BoundLogger,
    )
    return logger


def _drop_formatter_fields(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    for key in _FORMATTER_FIELDS:
        event_dict.pop(key, None)
    return event_dict


def _pre_chain() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderer(json_output: bool) -> list[Any]:
    if json_output:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=False)]


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "WARNING",
    stream: TextIO | None = None,
) -> None:
    """Install a structured handler on the root logger.

    Args:
        json_output: Render one JSON object per line instead of key=value text.
        level: Root level name (DEBUG, INFO, WARNING, ERROR).
        stream: Destination (default: sys.stderr).

    Raises:
        AttributeError: If level is not a logging level name.
    """
    root_level = getattr(logging, level.upper())
    pre_chain = _pre_chain()

    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(
        ProcessorFormatter(
            processors=[_drop_formatter_fields, *_renderer(json_output)],
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(root_level)

    sdk_level = max(root_level, logging.WARNING)
    for name in _SDK_LOGGERS:
        logging.getLogger(name).setLevel(sdk_level)
