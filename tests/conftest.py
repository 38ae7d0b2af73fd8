# tests/conftest.py
"""Shared test fixtures and helpers.

Test Doubles:
- RecordingExporter: MetricExporter that keeps every snapshot it receives and
  can simulate failures (raise or report FAILURE)

Helpers:
- data_points(): flatten a MetricsData snapshot into {metric name: [(attributes, value)]}

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings
from opentelemetry.sdk.metrics.export import MetricExporter, MetricExportResult, MetricsData

from typer_otel_metrics.config import build_config, with_exporter
from typer_otel_metrics.consent import ConsentStore
from typer_otel_metrics.provider import MetricsProvider

# =============================================================================
# Test Doubles
# =============================================================================


class RecordingExporter(MetricExporter):
    """Exporter that records snapshots and can simulate failures."""

    def __init__(self, *, raise_on_export: bool = False, report_failure: bool = False) -> None:
        super().__init__()
        self._raise_on_export = raise_on_export
        self._report_failure = report_failure
        self.exports: list[MetricsData] = []
        self.shutdown_count = 0

    def export(self, metrics_data: MetricsData, timeout_millis: float = 10_000, **kwargs: Any) -> MetricExportResult:
        if self._raise_on_export:
            raise RuntimeError("Simulated export failure")
        self.exports.append(metrics_data)
        if self._report_failure:
            return MetricExportResult.FAILURE
        return MetricExportResult.SUCCESS

    def force_flush(self, timeout_millis: float = 10_000) -> bool:
        return True

    def shutdown(self, timeout_millis: float = 30_000, **kwargs: Any) -> None:
        self.shutdown_count += 1


def data_points(metrics_data: MetricsData | None) -> dict[str, list[tuple[dict[str, Any], int]]]:
    """Flatten a snapshot into {metric name: [(attributes, value), ...]}."""
    points: dict[str, list[tuple[dict[str, Any], int]]] = {}
    if metrics_data is None:
        return points
    for resource_metrics in metrics_data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                for point in metric.data.data_points:
                    points.setdefault(metric.name, []).append((dict(point.attributes or {}), point.value))
    return points


def exported_points(exporter: RecordingExporter) -> dict[str, list[tuple[dict[str, Any], int]]]:
    """Data points of the last snapshot an exporter received."""
    assert exporter.exports, "exporter received no snapshot"
    return data_points(exporter.exports[-1])


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def exporter() -> RecordingExporter:
    return RecordingExporter()


@pytest.fixture
def make_provider() -> Callable[..., MetricsProvider]:
    """Factory for providers with the given exporters."""

    def factory(*exporters: MetricExporter, service_name: str = "myapp") -> MetricsProvider:
        config = build_config(service_name, *(with_exporter(e) for e in exporters))
        return MetricsProvider.initialize(config)

    return factory


@pytest.fixture
def consent_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "config"
    directory.mkdir()
    return directory


@pytest.fixture
def opted_in_store(consent_dir: Path) -> ConsentStore:
    """Non-interactive store without an opt-out marker: collection allowed."""
    return ConsentStore("myapp", directory=consent_dir, interactive=False)


# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
