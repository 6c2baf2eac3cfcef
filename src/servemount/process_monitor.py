"""
Liveness tracking and signalling of the mount controller.

Mount tools such as rclone or bindfs may fork helpers, so by default the
controller is the whole process group created for the mount command and
it counts as alive while any member of that group exists.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from typing import Dict, Optional

logger = logging.getLogger("servemount.process_monitor")


class ProcessMonitor:
    """Answers "is the mount controller still running?" and stops it.

    Args:
        process_group: Treat controller ids as process group ids. When
            False a controller id is a single pid.
    """

    def __init__(self, process_group: bool = True) -> None:
        self.process_group = process_group
        self._children: Dict[int, subprocess.Popen] = {}

    def track(self, process: subprocess.Popen) -> int:
        """Remember a spawned child so its exit status can be reaped.

        Returns:
            The controller id for the child (its pid, which is also its
            process group id when it was started in a new session).
        """
        self._children[process.pid] = process
        return process.pid

    def is_alive(self, controller_id: Optional[int]) -> bool:
        """Check whether the controller still exists.

        Never raises: any error while asking counts as "not alive".

        Args:
            controller_id: Process group id (or pid).

        Returns:
            True if the controller (any group member) is still running.
        """
        if controller_id is None:
            return False

        child = self._children.get(controller_id)
        if child is not None:
            # Reap the leader; an unreaped zombie would still answer signal 0.
            exited = child.poll() is not None
            if exited and not self.process_group:
                return False

        try:
            if self.process_group:
                os.killpg(controller_id, 0)
            else:
                os.kill(controller_id, 0)
            return True
        except OSError:
            return False

    def terminate(self, controller_id: Optional[int]) -> None:
        """Ask the controller to exit (SIGTERM, then SIGCONT).

        SIGCONT lets stopped members resume so they can act on the SIGTERM.
        Best effort: a controller that is already gone is not an error.
        """
        if controller_id is None:
            return
        send = os.killpg if self.process_group else os.kill
        for sig in (signal.SIGTERM, signal.SIGCONT):
            try:
                send(controller_id, sig)
            except OSError as exc:
                logger.debug(
                    "Sending %s to %d failed: %s",
                    signal.Signals(sig).name, controller_id, exc,
                )
                return
