# src/typer_otel_metrics/attributes.py
"""Bounded-cardinality metric attributes for an invocation.

Only the presence of a flag is recorded, never its value. Flag values are
unbounded; presence labels are bounded by the number of declared flags.
"""

from __future__ import annotations

import sys
from collections.abc import Iterable
from typing import TextIO

TTY_ATTRIBUTE = "tty"


def is_interactive(stream: TextIO | None = None) -> bool:
    """Return True if the input stream is attached to a terminal."""
    if stream is None:
        stream = sys.stdin
    if stream is None:
        return False
    try:
        return stream.isatty()
    except ValueError:
        # Closed stream
        return False


def build_attributes(flags: Iterable[object], interactive: bool) -> dict[str, int | bool]:
    """Build the attribute set for one invocation.

    Args:
        flags: Names of the flags supplied on the command line.
        interactive: Whether the session is attached to a terminal.

    Returns:
        One ``{flag: 1}`` entry per supplied flag plus ``{"tty": interactive}``.
        Duplicate keys collapse; the last write wins.
    """
    attributes: dict[str, int | bool] = {}
    for flag in flags:
        if not isinstance(flag, str) or not flag:
            continue
        attributes[flag] = 1
    attributes[TTY_ATTRIBUTE] = bool(interactive)
    return attributes
