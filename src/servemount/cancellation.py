"""
Cancellation token and signal trapping for a scoped run.

A termination signal must never make the run exit silently. The first
signal cancels the token (so polling loops stop waiting and the final
status reflects the abort) and is forwarded to whatever is registered,
usually the running program. A further signal that arrives while the
teardown is already running interrupts the teardown itself.
"""

from __future__ import annotations

import logging
import signal
import threading
from typing import Callable, Optional

logger = logging.getLogger("servemount.cancellation")

TRAPPED_SIGNALS = tuple(
    getattr(signal, name)
    for name in ("SIGTERM", "SIGINT", "SIGQUIT", "SIGHUP", "SIGPIPE")
    if hasattr(signal, name)
)


class TeardownInterrupted(Exception):
    """Raised out of a teardown when another termination signal arrives."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"teardown interrupted by {signal.Signals(signum).name}")


class CancellationToken:
    """One-way flag recording that the run was asked to terminate."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.signum: Optional[int] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, signum: Optional[int] = None) -> None:
        """Cancel the token. Only the first signal number is kept."""
        if not self._event.is_set():
            self.signum = signum
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds, waking early on cancellation.

        Returns:
            True if the token is cancelled.
        """
        return self._event.wait(timeout)


class SignalGuard:
    """Context manager that traps termination signals for one run.

    Previous handlers are restored on exit. Outside the main thread no
    handlers can be installed and the guard is inert.

    Args:
        token: Token cancelled by the first trapped signal.
    """

    def __init__(self, token: CancellationToken):
        self.token = token
        self._previous: dict[int, object] = {}
        self._forwarders: list[Callable[[int], None]] = []
        self._in_teardown = False

    def __enter__(self) -> "SignalGuard":
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread; signal trapping disabled")
            return self
        for sig in TRAPPED_SIGNALS:
            self._previous[sig] = signal.signal(sig, self._handle_signal)
        return self

    def __exit__(self, *exc_info) -> None:
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)
        self._previous.clear()

    def forward_to(self, callback: Callable[[int], None]) -> None:
        """Call *callback* with the signal number for every trapped signal."""
        self._forwarders.append(callback)

    def stop_forwarding(self) -> None:
        self._forwarders.clear()

    def begin_teardown(self) -> None:
        """Mark that cleanup started; a repeated signal now interrupts it."""
        self._in_teardown = True

    def end_teardown(self) -> None:
        """Cleanup is over; later signals only cancel the token again."""
        self._in_teardown = False

    def _handle_signal(self, signum, frame):
        name = signal.Signals(signum).name
        if self._in_teardown and self.token.cancelled:
            logger.error("received %s during cleanup; aborting cleanup", name)
            raise TeardownInterrupted(signum)

        if self.token.cancelled:
            logger.warning("received %s again", name)
        else:
            logger.warning("received %s; aborting", name)
        self.token.cancel(signum)

        for callback in list(self._forwarders):
            try:
                callback(signum)
            except OSError as exc:
                logger.debug("Forwarding %s failed: %s", name, exc)
