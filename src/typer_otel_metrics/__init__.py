# src/typer_otel_metrics/__init__.py
"""typer-otel-metrics: invocation metrics for Typer and Click command trees.

Every command invocation (including --help) increments an OpenTelemetry
counter named after the command path. Metrics are collected only with the
user's consent and are flushed exactly once when the process finishes or is
interrupted.

Usage:
    from typer_otel_metrics import MetricsCommand, with_exporter

    cli = MetricsCommand(app)
    cli.setup_metrics(with_exporter(exporter))
    cli.execute()
"""

__version__ = "0.1.0"

from typer_otel_metrics.command import MetricsCommand
from typer_otel_metrics.config import (
    MetricsConfig,
    Option,
    build_config,
    with_consent_directory,
    with_exporter,
    with_flush_timeout,
    with_service_name,
    with_stdout_print,
)
from typer_otel_metrics.consent import ConsentDecision, ConsentStore
from typer_otel_metrics.errors import (
    ConfigurationError,
    ConsentIOError,
    ExportError,
    InitializationError,
    MetricsError,
    ShutdownTimeoutError,
)
from typer_otel_metrics.provider import MetricsProvider

__all__ = [
    "ConfigurationError",
    "ConsentDecision",
    "ConsentIOError",
    "ConsentStore",
    "ExportError",
    "InitializationError",
    "MetricsCommand",
    "MetricsConfig",
    "MetricsError",
    "MetricsProvider",
    "Option",
    "ShutdownTimeoutError",
    "__version__",
    "build_config",
    "with_consent_directory",
    "with_exporter",
    "with_flush_timeout",
    "with_service_name",
    "with_stdout_print",
]
