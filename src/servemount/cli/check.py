"""Check command: is a directory currently a mount point."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from ..config import ConfigurationError, load_config
from ..mount_poller import MountPoller
from ..process_monitor import ProcessMonitor
from ._common import console


def register_check_commands(main: click.Group) -> None:
    """Register the check command."""

    @main.command("check")
    @click.argument("path", type=click.Path(path_type=Path))
    @click.option(
        "--config",
        "config_path",
        type=click.Path(path_type=Path),
        default=None,
        help="YAML config file.",
    )
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    def check(path: Path, config_path, as_json: bool):
        """Report whether PATH is a mount point.

        Exits 0 when mounted and 1 when not. A check that hangs longer than
        the configured mount check timeout counts as not mounted.

        \b
        Example:

            servemount check /mnt/remote --json
        """
        try:
            config = load_config(config_path)
        except ConfigurationError as exc:
            console.print(f"[bold red]ERROR:[/] {exc}")
            sys.exit(2)

        poller = MountPoller(
            ProcessMonitor(process_group=config.process_group),
            poll_interval=config.poll_interval,
            check_timeout=config.mount_check_timeout,
        )
        mounted = poller.is_mounted(path)

        if as_json:
            click.echo(json.dumps({"path": str(path), "mounted": mounted}, indent=2))
        elif mounted:
            console.print(f"[bold green]MOUNTED[/] {path}")
        else:
            console.print(f"[bold red]NOT MOUNTED[/] {path}")

        sys.exit(0 if mounted else 1)
