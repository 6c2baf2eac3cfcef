"""
servemount CLI — mount, run, unmount.

The main Click group is defined here and every subcommand is registered
from its own module.

Entry point: servemount.cli:main
"""

from __future__ import annotations

import click

from .. import __version__
from ._common import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="servemount")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output.")
def main(verbose: bool):
    """servemount — run a program inside a mount that always gets cleaned up.

    \b
    Run:    servemount run rclone mount remote:path MOUNTPOINT -- ./backup.sh
    Check:  servemount check /mnt/remote
    """
    setup_logging(verbose)


# ---------------------------------------------------------------------------
# Register all commands from modular files
# ---------------------------------------------------------------------------

from .run import register_run_commands
from .check import register_check_commands

register_run_commands(main)
register_check_commands(main)
