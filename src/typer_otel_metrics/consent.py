# src/typer_otel_metrics/consent.py
"""Persisted opt-in/opt-out decision for metric collection.

Each application (keyed by its root command name) has one consent record in
the user config directory:

    <config-dir>/.<root>-metrics-optin    one ASCII byte: "1" (in) or "0" (out)

State machine on resolve():

    non-interactive ──> OPTED_IN, or OPTED_OUT when the opt-out marker
                        <config-dir>/.<root>-metrics-optout exists
    interactive:
        record "0"/"1"     ──> OPTED_OUT / OPTED_IN (no prompt)
        record absent      ──> prompt, save
        record corrupted   ──> prompt, save

Nothing here locks the record. Concurrent runs may read stale state, which is
acceptable because writes are rare, interactive and idempotent.
"""

from __future__ import annotations

import os
import sys
from enum import Enum
from pathlib import Path
from typing import TextIO

import typer

from typer_otel_metrics.attributes import is_interactive
from typer_otel_metrics.errors import ConsentIOError
from typer_otel_metrics.logging import get_logger

logger = get_logger(__name__)

OPT_IN_SUFFIX = "metrics-optin"
OPT_OUT_SUFFIX = "metrics-optout"

CONSENT_PROMPT = """
#######################################################
#                                                     #
# This command line utility would like to collect     #
# anonymous metrics on usage patterns to help build   #
# a better tool.                                      #
#                                                     #
# We require users to explicitly opt-in to consent to #
# allow us to collect these metrics.                  #
#                                                     #
#######################################################
"""

CONSENT_QUESTION = """
Would you like to share anonymous usage stats with
the developers of this tool? (y|N) """

OPT_IN_MESSAGE = "\nThank you for sharing!"
OPT_OUT_MESSAGE = "\nYou have opted out. We will not collect metrics."
RETRY_MESSAGE = "\nInvalid value detected. Only Y and N are allowed..."


class ConsentDecision(str, Enum):
    """User decision on metric collection."""

    NO_DECISION = "no_decision"
    OPTED_IN = "opted_in"
    OPTED_OUT = "opted_out"

    @property
    def allows_collection(self) -> bool:
        return self is ConsentDecision.OPTED_IN


def user_config_dir() -> Path:
    """Return the per-user configuration directory for this platform.

    Follows XDG_CONFIG_HOME on Unix, ~/Library/Application Support on macOS
    and %APPDATA% on Windows.
    """
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata)
        return Path.home() / "AppData" / "Roaming"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg and os.path.isabs(xdg):
        return Path(xdg)
    return Path.home() / ".config"


class ConsentStore:
    """Reads, prompts for and persists the consent decision of one application.

    Args:
        app_name: Root command name. Selects the record file.
        directory: Directory holding the record (default: user config dir).
        stdin: Stream the answer is read from (default: sys.stdin).
        stderr: Stream the prompt is written to (default: sys.stderr).
        interactive: Force the interactive/non-interactive path. Detected
            from stdin when None.
    """

    def __init__(
        self,
        app_name: str,
        *,
        directory: str | Path | None = None,
        stdin: TextIO | None = None,
        stderr: TextIO | None = None,
        interactive: bool | None = None,
    ) -> None:
        self._app_name = app_name
        self._directory = Path(directory) if directory is not None else None
        self._stdin = stdin
        self._stderr = stderr
        self._interactive = interactive
        self._decision = ConsentDecision.NO_DECISION

    @property
    def decision(self) -> ConsentDecision:
        """Decision from the last resolve(), NO_DECISION before that."""
        return self._decision

    @property
    def directory(self) -> Path:
        if self._directory is None:
            return user_config_dir()
        return self._directory

    @property
    def record_path(self) -> Path:
        return self.directory / f".{self._app_name}-{OPT_IN_SUFFIX}"

    @property
    def opt_out_path(self) -> Path:
        return self.directory / f".{self._app_name}-{OPT_OUT_SUFFIX}"

    @property
    def interactive(self) -> bool:
        if self._interactive is None:
            return is_interactive(self._stdin)
        return self._interactive

    def resolve(self) -> ConsentDecision:
        """Derive the decision for this run, prompting if required.

        Returns:
            OPTED_IN or OPTED_OUT.

        Raises:
            ConsentIOError: If the record cannot be read (the decision is
                OPTED_OUT), or the prompted answer cannot be saved (the
                error carries the prompted decision, which is kept).
        """
        if not self.interactive:
            self._decision = self._non_interactive_decision()
            return self._decision

        path = self.record_path
        try:
            with path.open("rb") as f:
                content = f.read(1)
        except FileNotFoundError:
            return self._prompt_and_save()
        except OSError as e:
            self._decision = ConsentDecision.OPTED_OUT
            raise ConsentIOError(
                f"Unexpected error reading metric opt-in file {path}. Metrics will not be collected. {e}"
            ) from e

        if content == b"1":
            self._decision = ConsentDecision.OPTED_IN
            return self._decision
        if content == b"0":
            self._decision = ConsentDecision.OPTED_OUT
            return self._decision

        logger.debug("Consent record corrupted, prompting again", path=str(path), content=repr(content))
        return self._prompt_and_save()

    def save(self, decision: ConsentDecision) -> None:
        """Persist a decision as a single byte.

        Raises:
            ConsentIOError: If the record cannot be written.
            ValueError: If decision is NO_DECISION.
        """
        if decision is ConsentDecision.NO_DECISION:
            raise ValueError("cannot persist NO_DECISION")
        path = self.record_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"1" if decision is ConsentDecision.OPTED_IN else b"0")
        except OSError as e:
            raise ConsentIOError(
                f"Unable to save opt-in status. User will be asked again for consent for telemetry. {e}",
                decision=decision,
            ) from e

    def reset(self) -> None:
        """Forget the stored decision so the next interactive run prompts."""
        try:
            self.record_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ConsentIOError(f"Unable to remove metric opt-in file {self.record_path}. {e}") from e
        self._decision = ConsentDecision.NO_DECISION

    def _non_interactive_decision(self) -> ConsentDecision:
        # Batch and CI usage must never block on a prompt.
        if self.opt_out_path.exists():
            return ConsentDecision.OPTED_OUT
        return ConsentDecision.OPTED_IN

    def _prompt_and_save(self) -> ConsentDecision:
        self._echo(CONSENT_PROMPT)
        decision = self._ask()
        self._decision = decision
        self.save(decision)
        return decision

    def _ask(self) -> ConsentDecision:
        stdin = self._stdin if self._stdin is not None else sys.stdin
        while True:
            self._echo(CONSENT_QUESTION)
            try:
                line = stdin.readline() if stdin is not None else ""
            except (OSError, ValueError) as e:
                raise ConsentIOError(
                    f"Error prompting for metric collection consent. Metrics will not be collected. {e}"
                ) from e
            if line == "":
                # End of stream: nobody can answer, treat as a refusal.
                self._echo(OPT_OUT_MESSAGE + "\n")
                return ConsentDecision.OPTED_OUT

            answer = line.strip()[:1].lower()
            if answer == "y":
                self._echo(OPT_IN_MESSAGE + "\n")
                return ConsentDecision.OPTED_IN
            if answer == "n":
                self._echo(OPT_OUT_MESSAGE + "\n")
                return ConsentDecision.OPTED_OUT
            self._echo(RETRY_MESSAGE + "\n")

    def _echo(self, message: str) -> None:
        stream = self._stderr if self._stderr is not None else sys.stderr
        typer.echo(message, file=stream, nl=False)
