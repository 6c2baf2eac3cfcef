"""
Pydantic models describing one scoped mount lifecycle.

A run owns exactly one mount: the handle identifying the mount process,
the state the supervisor is in, and the outcome of the program that was
run inside the mount.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

# Exit statuses reported by a run. Anything else is the program's own code.
EXIT_SIGNALED = 255
EXIT_CLEANUP_FAILED = 254
EXIT_SETUP_FAILED = 253
EXIT_NOT_FOUND = 127
EXIT_CANNOT_EXECUTE = 126


class MountState(str, Enum):
    """Lifecycle state of a supervised mount."""

    NOT_STARTED = "not-started"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPING = "stopping"
    STOPPED = "stopped"


# Stopping may be entered from any live state; everything else moves forward.
ALLOWED_TRANSITIONS: dict[MountState, frozenset[MountState]] = {
    MountState.NOT_STARTED: frozenset({MountState.STARTING, MountState.STOPPED}),
    MountState.STARTING: frozenset(
        {MountState.READY, MountState.FAILED, MountState.STOPPING}
    ),
    MountState.READY: frozenset({MountState.STOPPING}),
    MountState.FAILED: frozenset({MountState.STOPPING}),
    MountState.STOPPING: frozenset({MountState.STOPPED}),
    MountState.STOPPED: frozenset(),
}


class ReadyResult(str, Enum):
    """How waiting for a mount to become ready ended."""

    READY = "ready"
    DEAD = "dead"
    TIMED_OUT = "timed-out"
    CANCELLED = "cancelled"


class MountHandle(BaseModel):
    """The one live mount of a run."""

    mount_path: Path
    controller_id: Optional[int] = Field(
        default=None,
        description="Process group (or pid) of the mount command; None if it never spawned",
    )
    owns_directory: bool = False

    @property
    def label(self) -> str:
        """Short ``pid@dirname`` tag used in log lines."""
        pid = self.controller_id if self.controller_id is not None else "-"
        return f"{pid}@{self.mount_path.name}"


class ProgramOutcome(BaseModel):
    """What happened to the program run inside the mount."""

    launched: bool = False
    exit_code: Optional[int] = None
    signal: Optional[int] = None

    @classmethod
    def from_returncode(cls, returncode: int) -> "ProgramOutcome":
        """Build an outcome from a ``Popen.returncode``.

        Negative return codes mean the process was killed by that signal.
        """
        if returncode < 0:
            return cls(launched=True, signal=-returncode)
        return cls(launched=True, exit_code=returncode)

    @property
    def killed_by_signal(self) -> bool:
        return self.signal is not None


class RunOptions(BaseModel):
    """Per-invocation options for a scoped run.

    Timeouts left as ``None`` fall back to the loaded configuration.
    """

    custom_mount_point: Optional[Path] = None
    allow_empty: bool = False
    ready_timeout: Optional[float] = Field(default=None, ge=0)
    stop_timeout: Optional[float] = Field(default=None, ge=0)
