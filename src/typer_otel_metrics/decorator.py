# src/typer_otel_metrics/decorator.py
"""Injects invocation metrics into every node of a handler tree.

For each node the decorator replaces the three hook slots with wrappers that
do the metric work first and then chain to the hook that was there before:

    pre_hook   record one invocation (if consent allows), then original pre_hook
    post_hook  run the shared flush routine, then original post_hook. Inside
               a chained group the flush is deferred until the root
               context closes, after the last chained subcommand.
    help_hook  record one invocation, then the original help renderer

The originals are kept in a table keyed by node identity. Wrapping is
additive and idempotent: a node that already carries metered hooks, from this
decorator or another one, is left alone.

Telemetry failures never fail the command. Errors raised by the original
hooks always propagate.
"""

from __future__ import annotations

import weakref
from collections.abc import Callable
from dataclasses import dataclass

import click

from typer_otel_metrics.attributes import build_attributes, is_interactive
from typer_otel_metrics.consent import ConsentDecision, ConsentStore
from typer_otel_metrics.errors import ConsentIOError
from typer_otel_metrics.flush import FlushSequencer
from typer_otel_metrics.logging import get_logger
from typer_otel_metrics.provider import MetricsProvider
from typer_otel_metrics.tree import HandlerNode, HelpHook, Hook

logger = get_logger(__name__)

_METERED_MARKER = "__metered_hook__"


@dataclass(frozen=True)
class OriginalHooks:
    """Hooks a node carried before decoration."""

    pre_hook: Hook | None
    post_hook: Hook | None
    help_hook: HelpHook | None


def is_metered(hook: object) -> bool:
    return getattr(hook, _METERED_MARKER, False) is True


def _mark(hook: Callable[..., object]) -> None:
    setattr(hook, _METERED_MARKER, True)


def _in_chain(ctx: click.Context) -> bool:
    parent = ctx.parent
    while parent is not None:
        if getattr(parent.command, "chain", False):
            return True
        parent = parent.parent
    return False


class CommandDecorator:
    """Wraps handler tree hooks with metric emission.

    Args:
        provider: Provider to record into. None (not yet initialized) makes
            every recording a no-op.
        consent: Store consulted once, on the first recorded invocation.
            None means collection is allowed without asking.
        sequencer: Flush routine run by post hooks. None skips flushing.
        interactive: Returns whether the session is attached to a terminal,
            for the tty attribute.
    """

    def __init__(
        self,
        provider: MetricsProvider | None,
        consent: ConsentStore | None = None,
        sequencer: FlushSequencer | None = None,
        interactive: Callable[[], bool] = is_interactive,
    ) -> None:
        self._provider = provider
        self._consent = consent
        self._sequencer = sequencer
        self._interactive = interactive
        self._originals: weakref.WeakKeyDictionary[HandlerNode, OriginalHooks] = weakref.WeakKeyDictionary()
        self._allowed: bool | None = None

    def decorate(self, root: HandlerNode) -> int:
        """Wrap every node under (and including) root.

        Returns:
            Number of nodes wrapped by this call.
        """
        wrapped = 0
        for node in root.walk():
            if self._wrap(node):
                wrapped += 1
        logger.debug("Command tree decorated", root=root.name, wrapped=wrapped)
        return wrapped

    def originals(self, node: HandlerNode) -> OriginalHooks | None:
        return self._originals.get(node)

    def collection_allowed(self) -> bool:
        """Resolve consent once for this process."""
        if self._allowed is not None:
            return self._allowed
        if self._consent is None:
            self._allowed = True
            return True

        try:
            decision = self._consent.resolve()
        except ConsentIOError as e:
            decision = e.decision if e.decision is not None else ConsentDecision.OPTED_OUT
            logger.warning(
                "Metrics consent error",
                error=str(e),
                collecting=decision.allows_collection,
            )
        self._allowed = decision.allows_collection
        return self._allowed

    def record(self, node: HandlerNode, ctx: click.Context) -> None:
        """Record one invocation of node, if initialized and allowed."""
        if self._provider is None:
            return
        if not self.collection_allowed():
            return

        path = node.invocation_path()
        try:
            attributes = build_attributes(node.supplied_flags(ctx), self._interactive())
            self._provider.record_invocation(path, attributes)
        except Exception as e:
            logger.warning("Failed to record command invocation", path=path, error=str(e))

    def flush_after(self, ctx: click.Context) -> None:
        """Run the shared flush once the invocation owning ctx is finished.

        A subcommand of a chained group is followed by its siblings, so the
        flush waits for the root context to close instead of releasing the
        provider under them.
        """
        if self._sequencer is None:
            return
        if _in_chain(ctx):
            ctx.find_root().call_on_close(self._sequencer.flush)
            return
        self._sequencer.flush()

    def _wrap(self, node: HandlerNode) -> bool:
        if node in self._originals or is_metered(node.pre_hook):
            return False

        original = OriginalHooks(node.pre_hook, node.post_hook, node.help_hook)
        self._originals[node] = original

        def pre_hook(node: HandlerNode, ctx: click.Context) -> None:
            self.record(node, ctx)
            if original.pre_hook is not None:
                original.pre_hook(node, ctx)

        def post_hook(node: HandlerNode, ctx: click.Context) -> None:
            self.flush_after(ctx)
            if original.post_hook is not None:
                original.post_hook(node, ctx)

        def help_hook(node: HandlerNode, ctx: click.Context) -> str:
            self.record(node, ctx)
            if original.help_hook is not None:
                return original.help_hook(node, ctx)
            return type(node.command).get_help(node.command, ctx)

        for hook in (pre_hook, post_hook, help_hook):
            _mark(hook)
        node.pre_hook = pre_hook
        node.post_hook = post_hook
        node.help_hook = help_hook
        return True
