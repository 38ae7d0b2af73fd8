# src/typer_otel_metrics/tree.py
"""Handler tree model over a Click command tree.

Click has no pre-run, post-run or help hooks of its own. HandlerNode mirrors
each Click command and gives it three settable hook slots. Binding a node
installs a dispatch shim on its Click command (once) so that:

- pre_hook and post_hook run around the command callback, but only for the
  invoked node. A group whose subcommand is being invoked is not the invoked
  node, so hooks fire once per invoked node (a chained group invokes several).
- help_hook replaces the command's get_help() entry point. It starts out as
  the command's original help renderer.

Hooks receive the node and the active click.Context. They report failure by
raising; the exception propagates through Click unchanged.

Typer applications are converted with typer.main.get_command() first. The
Click classes used for dispatch come from the command itself (see
click_core()), so commands built on a Typer-bundled Click work too.
"""

from __future__ import annotations

import functools
import sys
import weakref
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any

import click

NODE_ATTRIBUTE = "__handler_node__"
ROOT_PATH = "root"
PATH_SEPARATOR = "-"

Hook = Callable[["HandlerNode", click.Context], None]
HelpHook = Callable[["HandlerNode", click.Context], str]


def click_core(command: object) -> ModuleType:
    """Return the Click core module a command class is built on.

    Usually that is ``click.core``. Typer releases that bundle their own copy
    of Click build their commands on that copy instead, and its Group,
    Context and ParameterSource are distinct from the installed click's.

    Raises:
        TypeError: If command is not a Click command of any origin.
    """
    for cls in type(command).__mro__:
        if cls.__name__ != "Command":
            continue
        module = sys.modules.get(cls.__module__)
        if module is not None and hasattr(module, "ParameterSource") and hasattr(module, "Group"):
            return module
    raise TypeError(f"{type(command).__name__} is not a Click command")


def current_context(core: ModuleType) -> click.Context:
    """Innermost active context of the Click copy that owns ``core``."""
    package = sys.modules[core.__name__.rpartition(".")[0]]
    ctx: click.Context = package.get_current_context()
    return ctx


def flag_name(param: click.Parameter) -> str | None:
    """Return the command-line spelling of an option without dashes."""
    if getattr(param, "param_type_name", None) != "option":
        return None
    for opt in param.opts:
        if opt.startswith("--"):
            return opt[2:]
    return param.name


@dataclass(eq=False)
class HandlerNode:
    """One command in the tree.

    Nodes compare and hash by identity. The parent link is weak; nodes are
    owned by their parent's children list and, for the root, by the caller.
    """

    name: str
    command: click.Command
    children: list[HandlerNode] = field(default_factory=list)
    pre_hook: Hook | None = None
    post_hook: Hook | None = None
    help_hook: HelpHook | None = None
    _parent: weakref.ReferenceType[HandlerNode] | None = field(default=None, repr=False)

    @classmethod
    def from_click(
        cls,
        command: click.Command,
        *,
        name: str | None = None,
        parent: HandlerNode | None = None,
    ) -> HandlerNode:
        """Build (or refresh) the node tree for a Click command.

        A command that was bound before keeps its node, so repeated calls
        return the same tree. Subcommands added since are picked up.
        """
        existing = getattr(command, NODE_ATTRIBUTE, None)
        if isinstance(existing, HandlerNode):
            node = existing
        else:
            node = cls(name=name or command.name or "", command=command)
            node._bind()

        if parent is not None:
            parent.add_child(node)

        if isinstance(command, click_core(command).Group):
            for sub_name, sub_command in command.commands.items():
                cls.from_click(sub_command, name=sub_name, parent=node)
        return node

    @property
    def parent(self) -> HandlerNode | None:
        if self._parent is None:
            return None
        return self._parent()

    @property
    def is_root(self) -> bool:
        return self.parent is None

    def root(self) -> HandlerNode:
        node = self
        while (parent := node.parent) is not None:
            node = parent
        return node

    def add_child(self, child: HandlerNode) -> None:
        child._parent = weakref.ref(self)
        if not any(existing is child for existing in self.children):
            self.children.append(child)

    def walk(self) -> Iterator[HandlerNode]:
        """Yield this node and all descendants, depth first, in child order."""
        yield self
        for child in self.children:
            yield from child.walk()

    def find(self, *names: str) -> HandlerNode:
        """Return the descendant reached by following child names.

        Raises:
            KeyError: If a name does not match a child.
        """
        node = self
        for name in names:
            for child in node.children:
                if child.name == name:
                    node = child
                    break
            else:
                raise KeyError(f"{node.name!r} has no subcommand {name!r}")
        return node

    def path(self) -> list[str]:
        """Names from the root down to this node, root included."""
        names: list[str] = []
        node: HandlerNode | None = self
        while node is not None:
            names.append(node.name)
            node = node.parent
        names.reverse()
        return names

    def invocation_path(self) -> str:
        """Metric identifier: path below the root joined with '-', or 'root'."""
        below_root = self.path()[1:]
        if not below_root:
            return ROOT_PATH
        return PATH_SEPARATOR.join(below_root)

    @property
    def declared_flags(self) -> tuple[str, ...]:
        names = (flag_name(param) for param in self.command.params)
        return tuple(name for name in names if name)

    def flags(self, ctx: click.Context) -> dict[str, bool]:
        """Map each declared flag to whether it was given on the command line."""
        commandline = click_core(self.command).ParameterSource.COMMANDLINE
        flags: dict[str, bool] = {}
        for param in self.command.params:
            name = flag_name(param)
            if not name or param.name is None:
                continue
            flags[name] = ctx.get_parameter_source(param.name) is commandline
        return flags

    def supplied_flags(self, ctx: click.Context) -> list[str]:
        return [name for name, present in self.flags(ctx).items() if present]

    def _bind(self) -> None:
        command = self.command
        core = click_core(command)
        original_callback = command.callback
        original_get_help = command.get_help
        node = self

        def dispatch(*args: Any, **kwargs: Any) -> Any:
            ctx = current_context(core)
            invoked = ctx.invoked_subcommand is None
            if invoked and node.pre_hook is not None:
                node.pre_hook(node, ctx)
            result = original_callback(*args, **kwargs) if original_callback is not None else None
            if invoked and node.post_hook is not None:
                node.post_hook(node, ctx)
            return result

        if original_callback is not None:
            dispatch = functools.wraps(original_callback)(dispatch)

        def render_help(_node: HandlerNode, ctx: click.Context) -> str:
            return original_get_help(ctx)

        def get_help(ctx: click.Context) -> str:
            hook = node.help_hook if node.help_hook is not None else render_help
            return hook(node, ctx)

        self.help_hook = render_help
        command.callback = dispatch
        command.get_help = get_help  # type: ignore[method-assign]
        setattr(command, NODE_ATTRIBUTE, self)
