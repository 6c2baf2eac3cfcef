"""
Scoped runner — mount, run a program inside the mount, always unmount.

Usage:
    runner = ScopedRunner(load_config())
    status = runner.run(
        ["rclone", "mount", "remote:backup", "MOUNTPOINT"],
        "restic",
        ["backup", "."],
        RunOptions(),
    )

The program runs with the mount directory as its working directory and
gets the caller's working directory in ``$ORIGINAL_PWD``.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence

from .cancellation import CancellationToken, SignalGuard, TeardownInterrupted
from .config import ConfigurationError, MountConfig
from .models import (
    EXIT_CANNOT_EXECUTE,
    EXIT_CLEANUP_FAILED,
    EXIT_NOT_FOUND,
    EXIT_SETUP_FAILED,
    EXIT_SIGNALED,
    ProgramOutcome,
    ReadyResult,
    RunOptions,
)
from .supervisor import MountSupervisor

logger = logging.getLogger("servemount.runner")

ORIGINAL_PWD_ENV = "ORIGINAL_PWD"


def resolve_mount_command(command: Sequence[str], placeholder: str, mount_path: Path) -> List[str]:
    """Replace every *placeholder* argument with the mount path.

    Raises:
        ConfigurationError: If the command is empty or has no placeholder.
    """
    if not command:
        raise ConfigurationError("missing mount command")
    if placeholder not in command:
        raise ConfigurationError(f"command does not contain {placeholder} placeholder")
    return [str(mount_path) if arg == placeholder else arg for arg in command]


def resolve_program_path(program_path: str, original_cwd: str) -> str:
    """Anchor ``./`` and ``../`` program paths at the caller's directory.

    The program runs inside the mount, so a relative path would otherwise
    be looked up there.
    """
    if program_path.startswith(("./", "../")):
        return os.path.join(original_cwd, program_path)
    return program_path


def final_status(outcome: ProgramOutcome, aborted: bool, teardown_ok: bool) -> int:
    """Compute the exit status of a run.

    Precedence:
        1. teardown failed -> EXIT_CLEANUP_FAILED, even if the program succeeded
        2. program ran and was killed by a signal, or the run was aborted
           while it ran -> EXIT_SIGNALED
        3. program ran -> its exit code
        4. program could not be executed -> 126 / 127
        5. program never ran -> EXIT_SETUP_FAILED
    """
    if not teardown_ok:
        return EXIT_CLEANUP_FAILED
    if outcome.launched:
        if outcome.killed_by_signal or aborted:
            return EXIT_SIGNALED
        return outcome.exit_code
    if outcome.exit_code is not None:
        return outcome.exit_code
    return EXIT_SETUP_FAILED


class ScopedRunner:
    """Drives one complete mount -> program -> unmount lifecycle.

    Args:
        config: Mount configuration; per-run options override its timeouts.
        supervisor_factory: Builds the supervisor for a run. Defaults to
            :class:`MountSupervisor`.
    """

    def __init__(self, config: Optional[MountConfig] = None, supervisor_factory=None) -> None:
        self.config = config or MountConfig()
        self._supervisor_factory = supervisor_factory or MountSupervisor
        self.token = CancellationToken()
        self.outcome = ProgramOutcome()

    def _effective_config(self, options: RunOptions) -> MountConfig:
        updates = {}
        if options.ready_timeout is not None:
            updates["ready_timeout"] = options.ready_timeout
        if options.stop_timeout is not None:
            updates["stop_timeout"] = options.stop_timeout
        if options.allow_empty:
            updates["allow_empty"] = True
        return self.config.model_copy(update=updates)

    def run(
        self,
        mount_command: Sequence[str],
        program_path: str,
        program_args: Sequence[str] = (),
        options: Optional[RunOptions] = None,
    ) -> int:
        """Run *program_path* inside the mount created by *mount_command*.

        Args:
            mount_command: Mount command containing the placeholder argument.
            program_path: Program to run inside the mount.
            program_args: Arguments for the program.
            options: Mount point, empty-mount and timeout options.

        Returns:
            int: The program's exit code, or one of the reserved statuses
            (see :func:`final_status`).

        Raises:
            ConfigurationError: Before anything is created or spawned, for
                an invalid command, program path or mount point.
        """
        options = options or RunOptions()
        config = self._effective_config(options)
        original_cwd = os.getcwd()

        if not program_path:
            raise ConfigurationError("missing program path")
        if not mount_command:
            raise ConfigurationError("missing mount command")
        if config.placeholder not in mount_command:
            raise ConfigurationError(f"command does not contain {config.placeholder} placeholder")
        custom = options.custom_mount_point
        if custom is not None:
            custom = Path(os.path.realpath(custom.expanduser()))
            if not custom.is_dir():
                raise ConfigurationError(f"mountpoint does not exist: {custom}")

        program = resolve_program_path(program_path, original_cwd)
        supervisor = self._supervisor_factory(config)
        teardown_ok = False

        with SignalGuard(self.token) as guard:
            try:
                self._mount_and_run(supervisor, config, mount_command, custom, program,
                                    program_args, original_cwd, guard)
            finally:
                guard.stop_forwarding()
                self._report_outcome()
                try:
                    guard.begin_teardown()
                    teardown_ok = supervisor.stop()
                    guard.end_teardown()
                except TeardownInterrupted as exc:
                    guard.end_teardown()
                    logger.error("cleanup interrupted: %s", exc)
                    teardown_ok = False
                if not teardown_ok:
                    logger.error("cleanup failed")

        return final_status(self.outcome, self.token.cancelled, teardown_ok)

    def _mount_and_run(
        self,
        supervisor: MountSupervisor,
        config: MountConfig,
        mount_command: Sequence[str],
        custom: Optional[Path],
        program: str,
        program_args: Sequence[str],
        original_cwd: str,
        guard: SignalGuard,
    ) -> None:
        if custom is None:
            logger.info("mounting in temporary folder")
            try:
                mount_path = Path(tempfile.mkdtemp(prefix=config.temp_prefix))
            except OSError as exc:
                logger.error("cannot create temporary mount folder: %s", exc)
                return
        else:
            logger.info("mounting in %s", custom)
            mount_path = custom

        command = resolve_mount_command(mount_command, config.placeholder, mount_path)
        supervisor.start(command, mount_path, owns_directory=custom is None)

        result = supervisor.wait_until_ready(self.token)
        if result is not ReadyResult.READY:
            return

        if not config.allow_empty:
            try:
                empty = not any(mount_path.iterdir())
            except OSError as exc:
                # ENOTCONN / EIO from a FUSE mount whose backend went away
                logger.error("mount is not readable: %s", exc)
                return
            if empty:
                # e.g. rclone happily mounting a remote path that does not exist
                logger.error("mount is empty")
                return
        logger.info("mount successful")

        if self.token.cancelled:
            return
        self._run_program(program, program_args, mount_path, original_cwd, guard)

    def _run_program(
        self,
        program: str,
        program_args: Sequence[str],
        mount_path: Path,
        original_cwd: str,
        guard: SignalGuard,
    ) -> None:
        logger.info("launching %s", program)
        env = dict(os.environ)
        env[ORIGINAL_PWD_ENV] = original_cwd

        try:
            process = subprocess.Popen([program, *program_args], cwd=str(mount_path), env=env)
        except FileNotFoundError:
            logger.error("program not found: %s", program)
            self.outcome = ProgramOutcome(exit_code=EXIT_NOT_FOUND)
            return
        except PermissionError:
            logger.error("cannot execute program: %s", program)
            self.outcome = ProgramOutcome(exit_code=EXIT_CANNOT_EXECUTE)
            return
        except OSError as exc:
            logger.error("cannot execute program %s: %s", program, exc)
            self.outcome = ProgramOutcome(exit_code=EXIT_CANNOT_EXECUTE)
            return

        self.outcome = ProgramOutcome(launched=True)
        guard.forward_to(process.send_signal)
        try:
            returncode = process.wait()
        finally:
            guard.stop_forwarding()
        self.outcome = ProgramOutcome.from_returncode(returncode)

    def _report_outcome(self) -> None:
        outcome = self.outcome
        if outcome.launched:
            if outcome.killed_by_signal:
                logger.warning("program was terminated by signal %d", outcome.signal)
            elif self.token.cancelled:
                logger.warning(
                    "program finished with code %s but the run has been aborted",
                    outcome.exit_code,
                )
            else:
                logger.info("program has finished with code %s", outcome.exit_code)
        elif outcome.exit_code is None:
            if self.token.cancelled:
                logger.error("program was not launched: received exit signal")
            else:
                logger.error("program was not launched")
