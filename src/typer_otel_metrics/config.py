# src/typer_otel_metrics/config.py
"""Configuration for command instrumentation.

The configuration is built once by applying option callables, in order, to a
draft and validating the result with Pydantic. The resulting MetricsConfig is
frozen (immutable) after construction.

Usage:
    config = build_config(
        "myapp",
        with_exporter(OTLPMetricExporter()),
        with_flush_timeout(0.2),
    )
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

from opentelemetry.sdk.metrics.export import MetricExporter
from pydantic import BaseModel, Field, ValidationError, field_validator

from typer_otel_metrics.errors import ConfigurationError

# Metric flushing must never meaningfully delay process exit.
DEFAULT_FLUSH_TIMEOUT = 0.1
MAX_FLUSH_TIMEOUT = 1.0

Option = Callable[[dict[str, Any]], None]


class MetricsConfig(BaseModel):
    """Validated instrumentation settings."""

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    service_name: str = Field(description="Value of the service.name resource attribute")
    exporters: tuple[MetricExporter, ...] = Field(
        default=(),
        description="Exporters receiving the drained snapshot, in registration order",
    )
    print_to_stdout: bool = Field(
        default=False,
        description="Also print the snapshot to stdout for debugging",
    )
    flush_timeout: float = Field(
        default=DEFAULT_FLUSH_TIMEOUT,
        description="Deadline in seconds for the drain-and-release sequence",
    )
    consent_directory: Path | None = Field(
        default=None,
        description="Directory holding the consent record (default: user config dir)",
    )

    @field_validator("service_name")
    @classmethod
    def validate_service_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("service name cannot be empty")
        return v

    @field_validator("flush_timeout")
    @classmethod
    def validate_flush_timeout(cls, v: float) -> float:
        if v <= 0 or v > MAX_FLUSH_TIMEOUT:
            raise ValueError(f"flush_timeout must be in (0, {MAX_FLUSH_TIMEOUT}], got {v}")
        return v


def build_config(root_name: str, *options: Option) -> MetricsConfig:
    """Apply options over the defaults and validate.

    Args:
        root_name: Name of the root command, the default service name.
        *options: Option callables, applied in the order given.

    Returns:
        Frozen MetricsConfig.

    Raises:
        ConfigurationError: If an option fails or the result is invalid.
    """
    draft: dict[str, Any] = {"service_name": root_name, "exporters": []}

    for option in options:
        try:
            option(draft)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"failed to apply option: {e}") from e

    draft["exporters"] = tuple(draft["exporters"])
    try:
        return MetricsConfig(**draft)
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e


def with_service_name(name: str) -> Option:
    """Override the service name (defaults to the root command name)."""

    def apply(draft: dict[str, Any]) -> None:
        draft["service_name"] = name

    return apply


def with_exporter(exporter: MetricExporter) -> Option:
    """Register an exporter. Can be passed multiple times."""

    def apply(draft: dict[str, Any]) -> None:
        if not isinstance(exporter, MetricExporter):
            raise TypeError(f"exporter must be a MetricExporter, got {type(exporter).__name__}")
        draft["exporters"].append(exporter)

    return apply


def with_stdout_print(enabled: bool = True) -> Option:
    """Print drained metrics to stdout for debugging."""

    def apply(draft: dict[str, Any]) -> None:
        draft["print_to_stdout"] = enabled

    return apply


def with_flush_timeout(seconds: float) -> Option:
    """Set the deadline for flushing metrics at exit."""

    def apply(draft: dict[str, Any]) -> None:
        draft["flush_timeout"] = seconds

    return apply


def with_consent_directory(directory: str | Path) -> Option:
    """Store the consent record somewhere other than the user config dir."""

    def apply(draft: dict[str, Any]) -> None:
        draft["consent_directory"] = Path(directory)

    return apply
