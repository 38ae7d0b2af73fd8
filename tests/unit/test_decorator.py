# tests/unit/test_decorator.py
"""Unit tests for CommandDecorator.

Tests cover:
- One increment per invocation, at the invoked node's path only
- Help invocations counted
- Consent gating (resolved once, errors disable collection)
- Original hooks chained in order, errors propagated
- Post hook flushes before the original post hook
- Chained groups flush once, after the last chained subcommand
- Idempotent decoration
- No-op before initialization, telemetry failures never fail the command
"""

import io
from collections.abc import Callable
from pathlib import Path

import click
import pytest
from click.testing import CliRunner
from structlog.testing import capture_logs

from tests.conftest import RecordingExporter, data_points
from typer_otel_metrics.consent import ConsentDecision, ConsentStore
from typer_otel_metrics.decorator import CommandDecorator, is_metered
from typer_otel_metrics.errors import ConsentIOError
from typer_otel_metrics.flush import FlushSequencer, FlushState
from typer_otel_metrics.provider import MetricsProvider
from typer_otel_metrics.tree import HandlerNode

ProviderFactory = Callable[..., MetricsProvider]

runner = CliRunner()


def build_cli() -> click.Group:
    @click.group(name="myapp")
    def root() -> None:
        pass

    @root.command()
    @click.option("--force", is_flag=True)
    @click.option("--message", default="")
    def sync(force: bool, message: str) -> None:
        click.echo("synced")

    @root.group()
    def child() -> None:
        pass

    @child.command()
    def grandchild() -> None:
        click.echo("grandchild")

    @root.command()
    def fail() -> None:
        raise click.ClickException("command failed")

    return root


@pytest.fixture
def cli() -> click.Group:
    return build_cli()


@pytest.fixture
def tree(cli: click.Group) -> HandlerNode:
    return HandlerNode.from_click(cli)


@pytest.fixture
def provider(make_provider: ProviderFactory) -> MetricsProvider:
    return make_provider()


def not_interactive() -> bool:
    return False


class TestRecording:
    def test_sync_force_scenario(
        self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider, opted_in_store: ConsentStore
    ) -> None:
        """myapp sync --force, non-interactive, opted in: one increment at 'sync'."""
        CommandDecorator(provider, opted_in_store, interactive=not_interactive).decorate(tree)

        result = runner.invoke(cli, ["sync", "--force", "--message", "hello"])

        assert result.exit_code == 0, result.output
        assert data_points(provider.collect()) == {"sync": [({"force": 1, "message": 1, "tty": False}, 1)]}

    def test_flag_values_never_recorded(self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider) -> None:
        CommandDecorator(provider, interactive=not_interactive).decorate(tree)

        runner.invoke(cli, ["sync", "--message", "top-secret"])

        ((attributes, _),) = data_points(provider.collect())["sync"]
        assert "top-secret" not in attributes.values()
        assert attributes == {"message": 1, "tty": False}

    def test_root_invocation_records_root(self, provider: MetricsProvider) -> None:
        @click.group(name="myapp", invoke_without_command=True)
        def root() -> None:
            pass

        tree = HandlerNode.from_click(root)
        CommandDecorator(provider, interactive=not_interactive).decorate(tree)

        runner.invoke(root, [])

        assert data_points(provider.collect()) == {"root": [({"tty": False}, 1)]}

    def test_nested_path_only(self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider) -> None:
        CommandDecorator(provider, interactive=not_interactive).decorate(tree)

        runner.invoke(cli, ["child", "grandchild"])

        assert set(data_points(provider.collect())) == {"child-grandchild"}

    def test_interactive_label(self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider) -> None:
        CommandDecorator(provider, interactive=lambda: True).decorate(tree)

        runner.invoke(cli, ["sync"])

        assert data_points(provider.collect())["sync"] == [({"tty": True}, 1)]

    def test_repeated_invocations_accumulate(
        self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider
    ) -> None:
        CommandDecorator(provider, interactive=not_interactive).decorate(tree)

        runner.invoke(cli, ["sync"])
        runner.invoke(cli, ["sync"])

        assert data_points(provider.collect())["sync"] == [({"tty": False}, 2)]

    def test_failing_command_still_counted(
        self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider
    ) -> None:
        CommandDecorator(provider, interactive=not_interactive).decorate(tree)

        result = runner.invoke(cli, ["fail"])

        assert result.exit_code == 1
        assert data_points(provider.collect()) == {"fail": [({"tty": False}, 1)]}


class TestHelp:
    def test_help_counts_as_invocation(self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider) -> None:
        CommandDecorator(provider, interactive=not_interactive).decorate(tree)

        result = runner.invoke(cli, ["child", "grandchild", "--help"])

        assert result.exit_code == 0
        assert "Usage:" in result.output
        assert set(data_points(provider.collect())) == {"child-grandchild"}

    def test_root_help(self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider) -> None:
        CommandDecorator(provider, interactive=not_interactive).decorate(tree)

        result = runner.invoke(cli, ["--help"])

        assert "sync" in result.output
        assert data_points(provider.collect()) == {"root": [({"tty": False}, 1)]}

    def test_help_output_unchanged(self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider) -> None:
        expected = runner.invoke(build_cli(), ["sync", "--help"]).output
        CommandDecorator(provider, interactive=not_interactive).decorate(tree)

        assert runner.invoke(cli, ["sync", "--help"]).output == expected


class TestConsentGate:
    def test_opted_out_records_nothing(
        self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider, consent_dir: Path
    ) -> None:
        store = ConsentStore("myapp", directory=consent_dir, interactive=False)
        store.opt_out_path.touch()
        CommandDecorator(provider, store, interactive=not_interactive).decorate(tree)

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 0
        assert data_points(provider.collect()) == {}

    def test_resolved_once(self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider) -> None:
        class CountingStore(ConsentStore):
            resolutions = 0

            def resolve(self) -> ConsentDecision:
                CountingStore.resolutions += 1
                return ConsentDecision.OPTED_IN

        CommandDecorator(provider, CountingStore("myapp"), interactive=not_interactive).decorate(tree)

        runner.invoke(cli, ["sync"])
        runner.invoke(cli, ["child", "grandchild"])

        assert CountingStore.resolutions == 1

    def test_interactive_prompt_once(self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider, consent_dir: Path) -> None:
        stderr = io.StringIO()
        store = ConsentStore(
            "myapp", directory=consent_dir, stdin=io.StringIO("y\n"), stderr=stderr, interactive=True
        )
        CommandDecorator(provider, store, interactive=not_interactive).decorate(tree)

        runner.invoke(cli, ["sync"])

        assert store.record_path.read_bytes() == b"1"
        assert set(data_points(provider.collect())) == {"sync"}

    def test_consent_error_disables_and_logs(
        self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider
    ) -> None:
        class BrokenStore(ConsentStore):
            def resolve(self) -> ConsentDecision:
                raise ConsentIOError("disk on fire")

        CommandDecorator(provider, BrokenStore("myapp"), interactive=not_interactive).decorate(tree)

        with capture_logs() as logs:
            result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 0
        assert result.output.strip() == "synced"
        assert data_points(provider.collect()) == {}
        assert logs[0]["event"] == "Metrics consent error"
        assert logs[0]["collecting"] is False

    def test_save_error_honours_prompted_decision(
        self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider
    ) -> None:
        class UnsavableStore(ConsentStore):
            def resolve(self) -> ConsentDecision:
                raise ConsentIOError("read-only", decision=ConsentDecision.OPTED_IN)

        CommandDecorator(provider, UnsavableStore("myapp"), interactive=not_interactive).decorate(tree)

        with capture_logs():
            runner.invoke(cli, ["sync"])

        assert set(data_points(provider.collect())) == {"sync"}


class TestChaining:
    def test_original_hooks_run_after_metric_work(
        self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider
    ) -> None:
        order: list[str] = []
        sync = tree.find("sync")

        def original_pre(node: HandlerNode, ctx: click.Context) -> None:
            order.append(f"pre:{len(data_points(provider.collect()))}")

        sync.pre_hook = original_pre
        sync.post_hook = lambda node, ctx: order.append("post")
        CommandDecorator(provider, interactive=not_interactive).decorate(tree)

        runner.invoke(cli, ["sync"])

        # The invocation was already recorded when the original pre hook ran
        assert order == ["pre:1", "post"]

    def test_original_pre_hook_error_propagates(
        self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider
    ) -> None:
        def refuse(node: HandlerNode, ctx: click.Context) -> None:
            raise click.ClickException("pre-run refused")

        tree.find("sync").pre_hook = refuse
        CommandDecorator(provider, interactive=not_interactive).decorate(tree)

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 1
        assert "pre-run refused" in result.output
        assert "synced" not in result.output
        assert set(data_points(provider.collect())) == {"sync"}

    def test_post_hook_flushes_then_original_error_preserved(
        self, cli: click.Group, tree: HandlerNode, make_provider: ProviderFactory, exporter: RecordingExporter
    ) -> None:
        provider = make_provider(exporter)
        sequencer = FlushSequencer(provider, timeout=0.5)

        def failing_post(node: HandlerNode, ctx: click.Context) -> None:
            assert sequencer.gate.state is FlushState.DONE
            raise click.ClickException("post-run failed")

        tree.find("sync").post_hook = failing_post
        CommandDecorator(provider, sequencer=sequencer, interactive=not_interactive).decorate(tree)

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 1
        assert "post-run failed" in result.output
        assert len(exporter.exports) == 1
        assert data_points(exporter.exports[0]) == {"sync": [({"tty": False}, 1)]}

    def test_original_help_renderer_used(
        self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider
    ) -> None:
        tree.find("sync").help_hook = lambda node, ctx: "custom help"
        CommandDecorator(provider, interactive=not_interactive).decorate(tree)

        result = runner.invoke(cli, ["sync", "--help"])

        assert result.output.strip() == "custom help"
        assert set(data_points(provider.collect())) == {"sync"}


class TestChainedGroups:
    """A chained group invokes several nodes in one process."""

    @staticmethod
    def build_chained() -> click.Group:
        @click.group(name="myapp", chain=True)
        def root() -> None:
            pass

        @root.command()
        @click.option("--release", is_flag=True)
        def build(release: bool) -> None:
            click.echo("built")

        @root.command()
        def deploy() -> None:
            click.echo("deployed")

        return root

    def test_every_chained_subcommand_exported(
        self, make_provider: ProviderFactory, exporter: RecordingExporter
    ) -> None:
        cli = self.build_chained()
        provider = make_provider(exporter)
        sequencer = FlushSequencer(provider, timeout=0.5)
        CommandDecorator(provider, sequencer=sequencer, interactive=not_interactive).decorate(
            HandlerNode.from_click(cli)
        )

        result = runner.invoke(cli, ["build", "--release", "deploy"])

        assert result.exit_code == 0, result.output
        assert result.output.splitlines() == ["built", "deployed"]
        assert len(exporter.exports) == 1
        assert data_points(exporter.exports[0]) == {
            "build": [({"release": 1, "tty": False}, 1)],
            "deploy": [({"tty": False}, 1)],
        }
        assert provider.released

    def test_flush_waits_for_last_subcommand(
        self, make_provider: ProviderFactory, exporter: RecordingExporter
    ) -> None:
        cli = self.build_chained()
        provider = make_provider(exporter)
        sequencer = FlushSequencer(provider, timeout=0.5)
        tree = HandlerNode.from_click(cli)
        states: list[FlushState] = []
        tree.find("deploy").pre_hook = lambda node, ctx: states.append(sequencer.gate.state)
        CommandDecorator(provider, sequencer=sequencer, interactive=not_interactive).decorate(tree)

        runner.invoke(cli, ["build", "deploy"])

        assert states == [FlushState.PENDING]
        assert sequencer.gate.state is FlushState.DONE


class TestIdempotence:
    def test_decorate_twice_records_once(
        self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider
    ) -> None:
        decorator = CommandDecorator(provider, interactive=not_interactive)

        assert decorator.decorate(tree) == 5
        assert decorator.decorate(tree) == 0

        runner.invoke(cli, ["sync"])
        assert data_points(provider.collect())["sync"] == [({"tty": False}, 1)]

    def test_second_decorator_does_not_double_wrap(
        self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider
    ) -> None:
        CommandDecorator(provider, interactive=not_interactive).decorate(tree)

        assert CommandDecorator(provider, interactive=not_interactive).decorate(tree) == 0

        runner.invoke(cli, ["sync"])
        assert data_points(provider.collect())["sync"] == [({"tty": False}, 1)]

    def test_originals_table(self, tree: HandlerNode, provider: MetricsProvider) -> None:
        sync = tree.find("sync")
        marker = lambda node, ctx: None  # noqa: E731
        sync.post_hook = marker
        decorator = CommandDecorator(provider)

        decorator.decorate(tree)

        originals = decorator.originals(sync)
        assert originals is not None
        assert originals.pre_hook is None
        assert originals.post_hook is marker
        assert is_metered(sync.pre_hook)
        assert is_metered(sync.post_hook)
        assert is_metered(sync.help_hook)


class TestFailureIsolation:
    def test_no_provider_is_noop(self, cli: click.Group, tree: HandlerNode) -> None:
        CommandDecorator(None).decorate(tree)

        result = runner.invoke(cli, ["sync", "--force"])

        assert result.exit_code == 0
        assert result.output.strip() == "synced"

    def test_recording_failure_logged_not_raised(
        self, cli: click.Group, tree: HandlerNode, provider: MetricsProvider, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def explode(path: str, attributes: dict[str, object]) -> None:
            raise RuntimeError("instrument broke")

        monkeypatch.setattr(provider, "record_invocation", explode)
        CommandDecorator(provider, interactive=not_interactive).decorate(tree)

        with capture_logs() as logs:
            result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 0
        assert logs[0]["event"] == "Failed to record command invocation"
        assert logs[0]["path"] == "sync"
