"""Run command: mount, run a program inside the mount, unmount."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import click

from ..config import ConfigurationError, load_config
from ..models import (
    EXIT_CLEANUP_FAILED,
    EXIT_SETUP_FAILED,
    EXIT_SIGNALED,
    RunOptions,
)
from ..runner import ScopedRunner
from ._common import console

DELIMITER = "--"


def split_command(args: Sequence[str]) -> Tuple[List[str], str, List[str]]:
    """Split ``MOUNT_COMMAND... -- PROGRAM [ARGS...]`` at the first ``--``.

    Returns:
        (mount_command, program_path, program_args)

    Raises:
        ConfigurationError: If the mount command, the delimiter or the
            program is missing.
    """
    args = list(args)
    if DELIMITER not in args:
        raise ConfigurationError("missing -- delimiter")
    index = args.index(DELIMITER)
    mount_command, rest = args[:index], args[index + 1:]
    if not mount_command:
        raise ConfigurationError("missing mount command")
    if not rest:
        raise ConfigurationError("missing program path")
    return mount_command, rest[0], rest[1:]


def register_run_commands(main: click.Group) -> None:
    """Register the run command."""

    @main.command(
        "run",
        context_settings={"allow_interspersed_args": False},
    )
    @click.option(
        "--mountpoint",
        type=click.Path(path_type=Path),
        default=None,
        help="Mount into this existing directory instead of a temporary one.",
    )
    @click.option(
        "--allow-empty",
        is_flag=True,
        default=False,
        help="Accept a mount whose directory has no entries.",
    )
    @click.option(
        "--config",
        "config_path",
        type=click.Path(path_type=Path),
        default=None,
        help="YAML config file (default: $SERVEMOUNT_CONFIG or ~/.config/servemount/config.yaml).",
    )
    @click.option(
        "--ready-timeout",
        type=click.IntRange(min=0),
        default=None,
        help="Seconds to wait for the mount to become ready.",
    )
    @click.option(
        "--stop-timeout",
        type=click.IntRange(min=0),
        default=None,
        help="Seconds the whole unmount/terminate sequence may take.",
    )
    @click.argument("command", nargs=-1, type=click.UNPROCESSED)
    def run(
        mountpoint: Optional[Path],
        allow_empty: bool,
        config_path: Optional[Path],
        ready_timeout: Optional[int],
        stop_timeout: Optional[int],
        command: Tuple[str, ...],
    ):
        """Mount, run a program inside the mount, and always unmount.

        The mount command must contain the MOUNTPOINT placeholder, which is
        replaced by the mount directory. The program runs with the mount
        directory as its working directory; $ORIGINAL_PWD holds the
        directory servemount was started in.

        Options go before the mount command.

        \b
        Exit status:
            the program's exit code when it ran
            253  the program was never launched (mount failed, empty, aborted)
            254  cleanup failed (mount process could not be stopped)
            255  the program was killed by a signal or the run was aborted

        \b
        Examples:

            servemount run rclone mount --read-only remote:data MOUNTPOINT -- ls -la

            servemount run --mountpoint /mnt/src bindfs -f /srv/src MOUNTPOINT -- ./build.sh
        """
        try:
            mount_command, program_path, program_args = split_command(command)
            config = load_config(config_path)
            options = RunOptions(
                custom_mount_point=mountpoint,
                allow_empty=allow_empty,
                ready_timeout=ready_timeout,
                stop_timeout=stop_timeout,
            )
            status = ScopedRunner(config).run(
                mount_command, program_path, program_args, options
            )
        except ConfigurationError as exc:
            console.print(f"[bold red]ERROR:[/] {exc}")
            sys.exit(EXIT_SETUP_FAILED)

        if status == EXIT_CLEANUP_FAILED:
            console.print(
                "[bold red]Cleanup failed.[/] "
                "[dim]The mount process may still be running.[/]"
            )
        elif status == EXIT_SETUP_FAILED:
            console.print("[bold red]Program was not launched.[/]")
        elif status == EXIT_SIGNALED:
            console.print("[yellow]Program was aborted or finished with code 255.[/]")
        sys.exit(status)
