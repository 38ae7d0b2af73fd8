# src/typer_otel_metrics/command.py
"""Drop-in instrumented root command.

Wraps a Typer application or Click command so every invocation is counted and
metrics are flushed exactly once when the command finishes or the process is
interrupted.

Usage:
    app = typer.Typer(name="myapp")
    ...

    def main() -> None:
        cli = MetricsCommand(app)
        cli.setup_metrics(with_exporter(OTLPMetricExporter()))
        cli.execute()
"""

from __future__ import annotations

import os
import signal
import sys
from collections.abc import Callable, Iterable, Sequence
from typing import Any

import click
import typer
from opentelemetry.metrics import Meter

from typer_otel_metrics.config import Option, build_config
from typer_otel_metrics.consent import ConsentStore
from typer_otel_metrics.decorator import CommandDecorator
from typer_otel_metrics.flush import DEFAULT_SIGNALS, FlushSequencer, InterruptListener
from typer_otel_metrics.logging import get_logger
from typer_otel_metrics.provider import MetricsProvider
from typer_otel_metrics.tree import HandlerNode, click_core

logger = get_logger(__name__)


def root_command_name(command: click.Command) -> str:
    """Name of the root command, falling back to the program name like Click does."""
    if command.name:
        return command.name
    return os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "cli"


class MetricsCommand:
    """Instrumented root of a command tree.

    Runs uninstrumented until setup_metrics() succeeds.

    Args:
        app: Typer application or Click command to instrument.
        name: Root command name. Defaults to the command name, then to the
            program name. Selects the consent record and the default
            service name.
        consent: Consent store to use instead of the default one in the
            user config directory.
        interrupt_signals: Signals that trigger flush-and-exit.
        exit_func: Called with the exit status after an interrupt flush.
    """

    def __init__(
        self,
        app: typer.Typer | click.Command,
        *,
        name: str | None = None,
        consent: ConsentStore | None = None,
        interrupt_signals: Iterable[signal.Signals] = DEFAULT_SIGNALS,
        exit_func: Callable[[int], Any] = os._exit,
    ) -> None:
        if isinstance(app, typer.Typer):
            command = typer.main.get_command(app)
        else:
            try:
                click_core(app)
            except TypeError:
                raise TypeError(f"expected typer.Typer or click.Command, got {type(app).__name__}") from None
            command = app

        self._command = command
        self._name = name or root_command_name(command)
        self._root = HandlerNode.from_click(command, name=self._name)
        self._consent = consent
        self._interrupt_signals = tuple(interrupt_signals)
        self._exit_func = exit_func

        self._provider: MetricsProvider | None = None
        self._sequencer: FlushSequencer | None = None
        self._decorator: CommandDecorator | None = None
        self._listener: InterruptListener | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def command(self) -> click.Command:
        """The underlying Click command, e.g. for typer.testing.CliRunner."""
        return self._command

    @property
    def root(self) -> HandlerNode:
        return self._root

    @property
    def provider(self) -> MetricsProvider | None:
        return self._provider

    @property
    def consent(self) -> ConsentStore | None:
        return self._consent

    @property
    def meter(self) -> Meter:
        """Meter for application-defined instruments.

        Raises:
            RuntimeError: If setup_metrics() has not been called.
        """
        if self._provider is None:
            raise RuntimeError("setup_metrics() must be called before using the meter")
        return self._provider.meter

    def setup_metrics(self, *options: Option) -> MetricsProvider:
        """Build the configuration and provider, then decorate the tree.

        Calling it again returns the existing provider; options are ignored.

        Raises:
            ConfigurationError: If the options produce an invalid configuration.
            InitializationError: If the meter provider cannot be built.
        """
        if self._provider is not None:
            logger.debug("Metrics already set up", root=self._name)
            return self._provider

        config = build_config(self._name, *options)
        provider = MetricsProvider.initialize(config)

        if self._consent is None:
            self._consent = ConsentStore(self._name, directory=config.consent_directory)
        sequencer = FlushSequencer(provider, timeout=config.flush_timeout)
        decorator = CommandDecorator(provider, self._consent, sequencer)
        decorator.decorate(self._root)

        self._provider = provider
        self._sequencer = sequencer
        self._decorator = decorator
        self._listener = InterruptListener(sequencer, self._interrupt_signals, self._exit_func)
        return provider

    def execute(
        self,
        args: Sequence[str] | None = None,
        *,
        standalone_mode: bool = True,
        **extra: Any,
    ) -> Any:
        """Run the command, then flush metrics whatever the outcome.

        The command's return value or exception (including the SystemExit
        raised in standalone mode) reaches the caller unchanged.
        """
        if self._decorator is not None:
            # Subcommands may have been added after setup_metrics().
            HandlerNode.from_click(self._command, name=self._name)
            self._decorator.decorate(self._root)
        if self._listener is not None:
            self._listener.arm()

        try:
            return self._command.main(
                args=list(args) if args is not None else None,
                prog_name=self._name,
                standalone_mode=standalone_mode,
                **extra,
            )
        finally:
            self.flush()
            if self._listener is not None:
                self._listener.disarm()

    __call__ = execute

    def flush(self) -> bool:
        """Run the shared flush routine. Returns False if it already ran."""
        if self._sequencer is None:
            return False
        return self._sequencer.flush()
