# src/typer_otel_metrics/errors.py
"""Instrumentation-specific exceptions.

These exceptions are for the metrics layer only. They must never replace or
mask an exception raised by the instrumented command itself.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typer_otel_metrics.consent import ConsentDecision


class MetricsError(Exception):
    """Base class for all typer-otel-metrics errors."""


class ConfigurationError(MetricsError):
    """Raised when the metrics configuration fails validation."""


class InitializationError(MetricsError):
    """Raised when the OpenTelemetry resource or meter provider cannot be built."""


class ConsentIOError(MetricsError):
    """Raised on an unexpected failure reading or writing the consent record.

    A missing record is a normal state and never raises this.

    Attributes:
        decision: Decision obtained from the prompt before the failure, if
            any. When set, it is still honoured for the current run.
    """

    def __init__(self, message: str, decision: ConsentDecision | None = None) -> None:
        self.decision = decision
        super().__init__(message)


class ExportError(MetricsError):
    """Raised after a drain when one or more exporters failed.

    Every exporter is attempted; this aggregates the failures.

    Attributes:
        failures: (exporter name, exception or None) per failing exporter.
            The exception is None when the exporter reported FAILURE
            without raising.
    """

    def __init__(self, failures: list[tuple[str, Exception | None]]) -> None:
        self.failures = failures
        details = "; ".join(f"{name}: {error or 'export reported failure'}" for name, error in failures)
        super().__init__(f"{len(failures)} exporter(s) failed: {details}")


class ShutdownTimeoutError(MetricsError):
    """Raised when the flush deadline passes before teardown completes.

    Only ever logged by the flush sequencer.
    """
