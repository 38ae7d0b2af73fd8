# src/typer_otel_metrics/flush.py
"""Exactly-once flushing of metrics at process exit.

Two triggers race to flush:

    main thread        command returns (or raises) ──┐
                                                     ├──> FlushSequencer.flush()
    listener thread    SIGINT/SIGTERM received ──────┘         │
                                                               v
                                              FlushGate: PENDING -> IN_PROGRESS -> DONE

The gate makes the drain-and-release sequence run at most once. Whichever
trigger loses the race observes IN_PROGRESS or DONE and skips the work.

Thread Safety:
    FlushGate transitions are guarded by a lock. The signal handler itself
    only posts to a single-slot queue; the flush runs on the listener thread.
"""

from __future__ import annotations

import os
import queue
import signal
import threading
import time
from collections.abc import Callable, Iterable
from enum import Enum
from types import FrameType
from typing import Any

from typer_otel_metrics.config import DEFAULT_FLUSH_TIMEOUT
from typer_otel_metrics.errors import ExportError, ShutdownTimeoutError
from typer_otel_metrics.logging import get_logger
from typer_otel_metrics.provider import MetricsProvider

logger = get_logger(__name__)

INTERRUPT_EXIT_CODE = 1
DEFAULT_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)


class FlushState(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class FlushGate:
    """Single-use gate: only one caller ever gets to flush."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = FlushState.PENDING
        self._done = threading.Event()

    @property
    def state(self) -> FlushState:
        with self._lock:
            return self._state

    def try_acquire(self) -> bool:
        """Move PENDING to IN_PROGRESS. Returns False for every later caller."""
        with self._lock:
            if self._state is not FlushState.PENDING:
                return False
            self._state = FlushState.IN_PROGRESS
            return True

    def complete(self) -> None:
        with self._lock:
            self._state = FlushState.DONE
        self._done.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until DONE. Returns False on timeout."""
        return self._done.wait(timeout)


class FlushSequencer:
    """Drains and releases the provider once, within a deadline.

    Args:
        provider: Provider to flush. None turns flush() into a no-op that
            still closes the gate.
        timeout: Deadline in seconds for drain plus release.
    """

    def __init__(self, provider: MetricsProvider | None, timeout: float = DEFAULT_FLUSH_TIMEOUT) -> None:
        self._provider = provider
        self._timeout = timeout
        self._gate = FlushGate()

    @property
    def gate(self) -> FlushGate:
        return self._gate

    @property
    def timeout(self) -> float:
        return self._timeout

    def flush(self) -> bool:
        """Drain, export and release. Never raises.

        Returns:
            True for the call that did the work, False if another call
            already started or finished it.
        """
        if not self._gate.try_acquire():
            logger.debug("Metrics flush already handled", state=self._gate.state.value)
            return False

        try:
            if self._provider is not None:
                self._drain_and_release()
        finally:
            self._gate.complete()
        return True

    def wait(self) -> bool:
        """Wait for a flush started elsewhere, bounded by the deadline."""
        return self._gate.wait(self._timeout * 2)

    def _drain_and_release(self) -> None:
        assert self._provider is not None
        deadline = time.monotonic() + self._timeout

        def remaining_millis() -> float:
            return (deadline - time.monotonic()) * 1000

        try:
            self._provider.drain_and_export(timeout_millis=remaining_millis())
        except ExportError as e:
            logger.warning("Metrics export failed", error=str(e), failed_exporters=len(e.failures))
        except ShutdownTimeoutError as e:
            logger.warning("Metrics flush exceeded deadline", error=str(e), timeout_s=self._timeout)

        try:
            self._provider.release(timeout_millis=remaining_millis())
        except ShutdownTimeoutError as e:
            logger.warning("Metrics flush exceeded deadline", error=str(e), timeout_s=self._timeout)


class InterruptListener:
    """Flushes and terminates the process when an interrupt arrives.

    arm() installs handlers for the given signals and starts one background
    thread waiting on a single-fire channel. The handler only posts to the
    channel; the thread runs the flush (or waits for one already running on
    the main thread) and then calls exit_func(1). The running command is not
    cancelled.

    Signal handlers can only be installed from the main thread. Elsewhere
    arm() logs and leaves the listener inactive.

    Args:
        sequencer: Shared flush routine.
        signals: Signals treated as interrupts.
        exit_func: Called with the exit status after flushing. Defaults to
            os._exit, which terminates without unwinding the main thread.
    """

    def __init__(
        self,
        sequencer: FlushSequencer,
        signals: Iterable[signal.Signals] = DEFAULT_SIGNALS,
        exit_func: Callable[[int], Any] = os._exit,
    ) -> None:
        self._sequencer = sequencer
        self._signals = tuple(signals)
        self._exit_func = exit_func
        self._channel: queue.Queue[int | None] = queue.Queue(maxsize=1)
        self._previous: dict[signal.Signals, Any] = {}
        self._thread: threading.Thread | None = None
        self._fired = threading.Event()

    @property
    def armed(self) -> bool:
        return self._thread is not None

    @property
    def fired(self) -> bool:
        return self._fired.is_set()

    def arm(self) -> bool:
        """Install handlers and start the listener thread.

        Returns:
            True if armed, False if already armed or not on the main thread.
        """
        if self._thread is not None:
            return False
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread, interrupt listener not armed")
            return False

        for signum in self._signals:
            self._previous[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)

        self._thread = threading.Thread(
            target=self._listen,
            name="metrics-interrupt-listener",
            daemon=True,
        )
        self._thread.start()
        return True

    def disarm(self) -> None:
        """Restore the previous handlers and stop the thread without flushing."""
        if self._thread is None:
            return
        for signum, previous in self._previous.items():
            signal.signal(signum, previous)
        self._previous.clear()

        if not self._fired.is_set():
            self._post(None)
            self._thread.join(timeout=1.0)
        self._thread = None

    def notify(self, signum: int) -> None:
        """Deliver an interrupt to the listener, as the signal handler does."""
        self._fired.set()
        self._post(signum)

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        self.notify(signum)

    def _post(self, item: int | None) -> None:
        try:
            self._channel.put_nowait(item)
        except queue.Full:
            # Single-fire: the first notification wins.
            pass

    def _listen(self) -> None:
        signum = self._channel.get()
        if signum is None:
            return

        logger.debug("Interrupt received, flushing metrics", signal=signum)
        if not self._sequencer.flush():
            self._sequencer.wait()
        self._exit_func(INTERRUPT_EXIT_CODE)
