"""
Mount status polling.

Asking whether a path is mounted can hang forever on a wedged FUSE
filesystem, so every check runs as a subprocess with a guard timeout.
A check that times out counts as "not mounted" for that check only.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import List, Optional, Union

from .cancellation import CancellationToken
from .models import ReadyResult
from .process_monitor import ProcessMonitor

logger = logging.getLogger("servemount.mount_poller")

PROC_MOUNTS = Path("/proc/mounts")

_UNMOUNT_COMMANDS = (
    ["fusermount", "-u"],
    ["fusermount3", "-u"],
    ["umount"],
)

# Characters the kernel escapes in /proc/mounts fields.
_MOUNT_ESCAPES = {"\\040": " ", "\\011": "\t", "\\012": "\n", "\\134": "\\"}


def _unescape_mount_field(field: str) -> str:
    for escaped, char in _MOUNT_ESCAPES.items():
        field = field.replace(escaped, char)
    return field


class MountPoller:
    """Checks mount status and waits for a mount to become ready.

    Args:
        monitor: Liveness source for the mount controller.
        poll_interval: Seconds between readiness checks.
        check_timeout: Guard timeout for a single mount check or unmount.
    """

    def __init__(
        self,
        monitor: ProcessMonitor,
        poll_interval: float = 0.1,
        check_timeout: float = 3.0,
    ) -> None:
        self.monitor = monitor
        self.poll_interval = poll_interval
        self.check_timeout = check_timeout

    # ------------------------------------------------------------------
    # Mount checks
    # ------------------------------------------------------------------

    def is_mounted(self, path: Union[str, Path]) -> bool:
        """Check whether *path* is a mount point.

        Uses ``mountpoint -q``; falls back to the mount table when the tool
        is not installed.

        Args:
            path: Directory to check.

        Returns:
            True if the path is mounted. False if it is not, or if the check
            did not finish within the guard timeout.
        """
        mount_str = os.path.abspath(str(path))
        try:
            result = subprocess.run(
                ["mountpoint", "-q", mount_str],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.check_timeout,
            )
            return result.returncode == 0
        except FileNotFoundError:
            return self._in_mount_table(mount_str)
        except subprocess.TimeoutExpired:
            logger.debug("Mount check for %s timed out", mount_str)
            return False
        except OSError as exc:
            logger.debug("Mount check for %s failed: %s", mount_str, exc)
            return False

    def _in_mount_table(self, mount_str: str) -> bool:
        """Look *mount_str* up in ``/proc/mounts`` or the ``mount`` listing."""
        if PROC_MOUNTS.exists():
            try:
                for line in PROC_MOUNTS.read_text(encoding="utf-8").splitlines():
                    parts = line.split()
                    if len(parts) >= 2 and _unescape_mount_field(parts[1]) == mount_str:
                        return True
            except OSError as exc:
                logger.debug("Reading %s failed: %s", PROC_MOUNTS, exc)
            return False

        # macOS / BSD: "<device> on <path> (<options>)"
        try:
            result = subprocess.run(
                ["mount"],
                capture_output=True,
                text=True,
                timeout=self.check_timeout,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as exc:
            logger.debug("Listing mounts failed: %s", exc)
            return False
        return any(
            f" on {mount_str} (" in line for line in result.stdout.splitlines()
        )

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def wait_for_ready(
        self,
        controller_id: Optional[int],
        path: Union[str, Path],
        timeout: float,
        token: Optional[CancellationToken] = None,
    ) -> ReadyResult:
        """Poll until the mount is ready, its controller died, or time is up.

        Each tick is evaluated in a fixed order: mounted wins over a dead
        controller, which wins over cancellation and the timeout. A mount
        that is ready in the same tick its controller exits is READY.

        Args:
            controller_id: Mount controller to watch.
            path: Mount directory.
            timeout: Seconds to wait in total.
            token: Cancels the wait when a termination signal arrives.

        Returns:
            ReadyResult: READY, DEAD, CANCELLED or TIMED_OUT.
        """
        deadline = time.monotonic() + timeout
        while True:
            if self.is_mounted(path):
                return ReadyResult.READY
            if not self.monitor.is_alive(controller_id):
                return ReadyResult.DEAD
            if token is not None and token.cancelled:
                return ReadyResult.CANCELLED
            if time.monotonic() >= deadline:
                return ReadyResult.TIMED_OUT
            if token is not None:
                token.wait(self.poll_interval)
            else:
                time.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Unmounting
    # ------------------------------------------------------------------

    def unmount(self, path: Union[str, Path]) -> bool:
        """Best-effort unmount of *path*.

        Tries ``fusermount -u``, ``fusermount3 -u`` and ``umount`` in turn.
        The result is informational only; whether the mount controller
        exits afterwards is what counts.

        Returns:
            True if one of the unmount commands succeeded.
        """
        mount_str = os.path.abspath(str(path))
        for cmd in _UNMOUNT_COMMANDS:
            full_cmd: List[str] = [*cmd, mount_str]
            try:
                result = subprocess.run(
                    full_cmd,
                    stdin=subprocess.DEVNULL,
                    capture_output=True,
                    text=True,
                    timeout=self.check_timeout,
                )
            except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as exc:
                logger.debug("Unmount command %s failed: %s", full_cmd, exc)
                continue
            if result.returncode == 0:
                logger.debug("Unmounted %s with %s", mount_str, cmd[0])
                return True
            logger.debug(
                "%s failed (rc=%d): %s",
                " ".join(full_cmd), result.returncode, result.stderr.strip(),
            )
        return False
