# src/typer_otel_metrics/demo.py
"""Example CLI instrumented with typer-otel-metrics.

Every invocation, including --help on any command, is counted and the
collected metrics are printed to stdout on exit.

    typer-otel-metrics-demo sync --force
    typer-otel-metrics-demo my-subcommand --test --string hello
    typer-otel-metrics-demo child grandchild --help
"""

from __future__ import annotations

import typer

from typer_otel_metrics import __version__
from typer_otel_metrics.command import MetricsCommand
from typer_otel_metrics.config import with_stdout_print
from typer_otel_metrics.logging import configure_logging, get_logger

logger = get_logger(__name__)

app = typer.Typer(
    name="demo",
    help="Example CLI application with OpenTelemetry metrics.",
    no_args_is_help=True,
)

child_app = typer.Typer(help="Nested command group.")
app.add_typer(child_app, name="child")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"typer-otel-metrics version {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """Example CLI application with OpenTelemetry metrics."""
    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "WARNING")


@app.command()
def sync(
    force: bool = typer.Option(False, "--force", "-f", help="Sync even if nothing changed."),
) -> None:
    """Pretend to synchronise something."""
    typer.echo(f"Synced (force={force})")


@app.command("my-subcommand")
def my_subcommand(
    test: bool = typer.Option(False, "--test", "-t", help="Test flag for command."),
    string: str = typer.Option("", "--string", "-s", help="A random string to pass."),
) -> None:
    """Print the flag values."""
    typer.echo("Flag Values")
    typer.echo(f" - testFlag: {test}")
    typer.echo(f" - stringFlag: {string}")


@child_app.callback()
def child_callback() -> None:
    """Nested command group."""
    logger.debug("In the child group callback")


@child_app.command()
def grandchild(
    string: str = typer.Option("", "--string", "-s", help="A random string to pass."),
) -> None:
    """Deepest command in the tree."""
    typer.echo(f"grandchild: {string}")


def build_cli() -> MetricsCommand:
    """Instrument the demo app with the stdout exporter."""
    cli = MetricsCommand(app)
    cli.setup_metrics(with_stdout_print(True))
    return cli


def main() -> None:
    """Console script entry point."""
    build_cli().execute()


if __name__ == "__main__":
    main()
