"""
Mount supervisor — the lifecycle state machine of one mount.

    not-started -> starting -> ready | failed -> stopping -> stopped

``start`` spawns the mount command detached in its own session,
``wait_until_ready`` is the readiness barrier, and ``stop`` runs the
teardown ladder exactly once:

1. controller already gone: nothing to do
2. path not mounted (it never became ready): terminate right away, wait
3. clean unmount, wait one phase
4. unmount again (mount may have been busy or still initialising), wait
5. terminate the controller, wait
6. still alive: report that the mount process could not be terminated

The overall stop timeout is split evenly across the phases. With
``teardown_phases=2`` the retry step is skipped.
"""

from __future__ import annotations

import logging
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .cancellation import CancellationToken
from .config import MountConfig
from .models import ALLOWED_TRANSITIONS, MountHandle, MountState, ReadyResult
from .mount_poller import MountPoller
from .process_monitor import ProcessMonitor

logger = logging.getLogger("servemount.supervisor")


class InvalidTransition(RuntimeError):
    """Raised when the supervisor is driven out of order."""


class MountSupervisor:
    """Owns one mount: its process, its directory and its state.

    Args:
        config: Timeouts and teardown policy.
        monitor: Liveness source. Defaults to a :class:`ProcessMonitor`
            honouring ``config.process_group``.
        poller: Mount checker. Defaults to a :class:`MountPoller` built
            from *monitor* and the config.
    """

    def __init__(
        self,
        config: Optional[MountConfig] = None,
        monitor: Optional[ProcessMonitor] = None,
        poller: Optional[MountPoller] = None,
    ) -> None:
        self.config = config or MountConfig()
        self.monitor = monitor or ProcessMonitor(process_group=self.config.process_group)
        self.poller = poller or MountPoller(
            self.monitor,
            poll_interval=self.config.poll_interval,
            check_timeout=self.config.mount_check_timeout,
        )
        self._state = MountState.NOT_STARTED
        self._handle: Optional[MountHandle] = None
        self._process: Optional[subprocess.Popen] = None
        self._stop_result: Optional[bool] = None

    @property
    def state(self) -> MountState:
        return self._state

    @property
    def handle(self) -> Optional[MountHandle]:
        return self._handle

    def _transition(self, new_state: MountState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self._state]:
            raise InvalidTransition(
                f"cannot go from {self._state.value} to {new_state.value}"
            )
        logger.debug("Mount state %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start(
        self,
        mount_command: Sequence[str],
        path: Path,
        owns_directory: bool = False,
    ) -> MountHandle:
        """Spawn the mount command.

        The command runs in a new session (and process group) so terminal
        job-control signals aimed at the caller do not reach it, while its
        output still goes to the caller's stdout/stderr.

        Args:
            mount_command: Fully resolved mount command.
            path: Mount directory.
            owns_directory: Remove *path* after a successful teardown.

        Returns:
            MountHandle: The live handle. Its ``controller_id`` is None when
            the command could not be spawned; the state is then FAILED.
        """
        self._transition(MountState.STARTING)
        self._handle = MountHandle(mount_path=path, owns_directory=owns_directory)

        try:
            self._process = subprocess.Popen(
                list(mount_command),
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("could not launch mount command %s: %s", mount_command[0], exc)
            self._transition(MountState.FAILED)
            return self._handle

        self._handle.controller_id = self.monitor.track(self._process)
        logger.debug("Mount command started (pid=%d)", self._process.pid)
        return self._handle

    def wait_until_ready(self, token: Optional[CancellationToken] = None) -> ReadyResult:
        """Block until the mount is ready or has failed.

        Returns:
            ReadyResult: READY moves the supervisor to ``ready``; any other
            result moves it to ``failed``.
        """
        if self._state is MountState.FAILED:
            return ReadyResult.DEAD
        if self._state is not MountState.STARTING or self._handle is None:
            raise InvalidTransition(f"cannot wait for a mount in state {self._state.value}")

        handle = self._handle
        result = self.poller.wait_for_ready(
            handle.controller_id,
            handle.mount_path,
            self.config.ready_timeout,
            token=token,
        )

        if result is ReadyResult.READY:
            self._transition(MountState.READY)
            return result

        if result is ReadyResult.DEAD:
            logger.error("mount %s stopped", handle.label)
        elif result is ReadyResult.TIMED_OUT:
            logger.error("mount %s timed out", handle.label)
        else:
            logger.error("mount %s cancelled before it became ready", handle.label)
        self._transition(MountState.FAILED)
        return result

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def stop(self) -> bool:
        """Tear the mount down. Runs at most once; later calls repeat the result.

        The supervisor always ends in ``stopped``, also when teardown fails
        or is interrupted, so callers can carry on.

        Returns:
            True if the controller is gone and an owned directory was
            removed. False if the mount process could not be terminated or
            the directory could not be deleted.
        """
        if self._stop_result is not None:
            return self._stop_result
        if self._state is MountState.STOPPING:
            # Re-entered while a teardown is unwinding; do not run it twice.
            return False

        if self._state is MountState.NOT_STARTED:
            self._transition(MountState.STOPPED)
            self._stop_result = True
            return True

        self._transition(MountState.STOPPING)
        ok = False
        try:
            ok = self._teardown() and self._reclaim_directory()
        finally:
            self._stop_result = ok
            self._transition(MountState.STOPPED)
        return ok

    def _teardown_actions(self) -> List[Callable[[], None]]:
        """Ordered escalation ladder for the configured number of phases."""
        retries = self.config.teardown_phases - 1
        return [self._unmount] * retries + [self._terminate]

    def _teardown(self) -> bool:
        handle = self._handle
        if handle is None or not self.monitor.is_alive(handle.controller_id):
            logger.debug("Mount controller already gone; nothing to stop")
            return True

        logger.info("waiting for mount %s to stop", handle.label)
        actions = self._teardown_actions()
        if not self.poller.is_mounted(handle.mount_path):
            # Nothing to unmount, e.g. the mount never became ready.
            logger.info("%s is not mounted; stopping the mount process", handle.mount_path)
            actions = [self._terminate]

        phase_timeout = self.config.phase_timeout
        for step, action in enumerate(actions, start=1):
            action()
            if self._wait_for_exit(phase_timeout):
                logger.info("mount %s stopped", handle.label)
                return True
            logger.warning(
                "mount %s still running after teardown step %d", handle.label, step
            )

        logger.error("could not terminate mount process %s", handle.label)
        return False

    def _unmount(self) -> None:
        handle = self._handle
        if not self.poller.is_mounted(handle.mount_path):
            logger.debug("%s is not mounted; waiting for the controller", handle.mount_path)
            return
        if not self.poller.unmount(handle.mount_path):
            logger.warning("unmounting %s failed", handle.label)

    def _terminate(self) -> None:
        handle = self._handle
        logger.warning("killing mount process %s", handle.label)
        self.monitor.terminate(handle.controller_id)

    def _wait_for_exit(self, timeout: float) -> bool:
        """Poll the controller until it exits or *timeout* passes."""
        deadline = time.monotonic() + timeout
        while self.monitor.is_alive(self._handle.controller_id):
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.config.poll_interval)
        return True

    def _reclaim_directory(self) -> bool:
        """Remove the mount directory if this run created it.

        Uses ``rmdir`` so a directory that is somehow still mounted or
        populated is never emptied.
        """
        handle = self._handle
        if handle is None or not handle.owns_directory:
            return True
        try:
            handle.mount_path.rmdir()
        except FileNotFoundError:
            return True
        except OSError as exc:
            logger.error("could not delete temporary mount folder %s: %s", handle.mount_path, exc)
            return False
        logger.debug("Removed mount directory %s", handle.mount_path)
        return True
