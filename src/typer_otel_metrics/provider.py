# src/typer_otel_metrics/provider.py
"""OpenTelemetry meter provider for invocation counters.

Pull model: instruments accumulate into an InMemoryMetricReader and nothing is
exported until drain_and_export() is called. The drained snapshot is then
pushed to every configured exporter in registration order.

One MetricsProvider exists per process. It is owned by the MetricsCommand
that created it and passed explicitly to the decorator and flush sequencer.
"""

from __future__ import annotations

import time
from typing import Any

from opentelemetry.metrics import Counter, Meter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    InMemoryMetricReader,
    MetricExporter,
    MetricExportResult,
    MetricsData,
)
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

from typer_otel_metrics.config import MetricsConfig
from typer_otel_metrics.errors import (
    ConfigurationError,
    ExportError,
    InitializationError,
    ShutdownTimeoutError,
)
from typer_otel_metrics.logging import get_logger

logger = get_logger(__name__)

INSTRUMENTATION_NAME = "typer-otel-metrics"
COUNTER_DESCRIPTION = "Command Invocation"
COUNTER_UNIT = "1"


def _exporter_name(exporter: MetricExporter) -> str:
    return type(exporter).__name__


class MetricsProvider:
    """Instrument factory, pull reader and exporter registry for one process.

    Use initialize() rather than the constructor.
    """

    def __init__(
        self,
        config: MetricsConfig,
        meter_provider: MeterProvider,
        reader: InMemoryMetricReader,
        exporters: list[MetricExporter],
    ) -> None:
        self._config = config
        self._meter_provider = meter_provider
        self._reader = reader
        self._exporters = exporters
        self._meter: Meter = meter_provider.get_meter(INSTRUMENTATION_NAME)
        self._counters: dict[str, Counter] = {}
        self._released = False

    @classmethod
    def initialize(cls, config: MetricsConfig) -> MetricsProvider:
        """Build the resource, reader and meter provider.

        Raises:
            ConfigurationError: If the service name is empty.
            InitializationError: If the OpenTelemetry SDK objects cannot be built.
        """
        if not config.service_name:
            raise ConfigurationError("service name cannot be empty")

        try:
            resource = Resource.create({SERVICE_NAME: config.service_name})
            reader = InMemoryMetricReader()
            meter_provider = MeterProvider(
                metric_readers=[reader],
                resource=resource,
                shutdown_on_exit=False,
            )
        except Exception as e:
            raise InitializationError(f"failed to create metrics provider: {e}") from e

        exporters = list(config.exporters)
        if config.print_to_stdout:
            exporters.append(ConsoleMetricExporter())

        logger.debug(
            "Metrics provider initialized",
            service_name=config.service_name,
            exporters=[_exporter_name(e) for e in exporters],
        )
        return cls(config, meter_provider, reader, exporters)

    @property
    def config(self) -> MetricsConfig:
        return self._config

    @property
    def meter(self) -> Meter:
        """Meter for application-defined instruments."""
        return self._meter

    @property
    def exporters(self) -> tuple[MetricExporter, ...]:
        return tuple(self._exporters)

    @property
    def released(self) -> bool:
        return self._released

    def record_invocation(self, path: str, attributes: dict[str, Any]) -> None:
        """Add one to the counter named after the invocation path."""
        if self._released:
            logger.debug("Invocation recorded after release, ignoring", path=path)
            return
        counter = self._counters.get(path)
        if counter is None:
            counter = self._meter.create_counter(
                path,
                unit=COUNTER_UNIT,
                description=COUNTER_DESCRIPTION,
            )
            self._counters[path] = counter
        counter.add(1, attributes=attributes)

    def collect(self) -> MetricsData | None:
        """Snapshot everything accumulated so far without exporting."""
        if self._released:
            return None
        return self._reader.get_metrics_data()

    def drain_and_export(self, timeout_millis: float = 10_000) -> None:
        """Snapshot the reader and push the snapshot to every exporter.

        All exporters are attempted even if some fail.

        Raises:
            ShutdownTimeoutError: If timeout_millis is already exhausted.
            ExportError: If any exporter raised or reported FAILURE.
        """
        if timeout_millis <= 0:
            raise ShutdownTimeoutError("deadline exceeded before metrics were drained")

        snapshot = self.collect()
        if snapshot is None:
            return

        deadline = time.monotonic() + timeout_millis / 1000
        failures: list[tuple[str, Exception | None]] = []
        for exporter in self._exporters:
            name = _exporter_name(exporter)
            remaining = max((deadline - time.monotonic()) * 1000, 0)
            try:
                result = exporter.export(snapshot, timeout_millis=remaining)
            except Exception as e:
                failures.append((name, e))
                logger.warning("Metrics exporter failed", exporter=name, error=str(e))
                continue
            if result is MetricExportResult.FAILURE:
                failures.append((name, None))
                logger.warning("Metrics exporter reported failure", exporter=name)

        if failures:
            raise ExportError(failures)

    def release(self, timeout_millis: float = 30_000) -> None:
        """Shut down the meter provider and every exporter.

        Safe to call more than once; only the first call does anything.

        Raises:
            ShutdownTimeoutError: If timeout_millis is already exhausted. The
                provider is still marked released.
        """
        if self._released:
            return
        self._released = True

        if timeout_millis <= 0:
            raise ShutdownTimeoutError("deadline exceeded before metrics provider shutdown")

        deadline = time.monotonic() + timeout_millis / 1000
        try:
            self._meter_provider.shutdown(timeout_millis=timeout_millis)
        except Exception as e:
            logger.warning("Error shutting down metrics provider", error=str(e))

        for exporter in self._exporters:
            remaining = max((deadline - time.monotonic()) * 1000, 0)
            try:
                exporter.shutdown(timeout_millis=remaining)
            except Exception as e:
                logger.warning("Error shutting down metrics exporter", exporter=_exporter_name(exporter), error=str(e))

        if time.monotonic() > deadline:
            raise ShutdownTimeoutError(f"metrics provider shutdown exceeded {timeout_millis:.0f}ms")
