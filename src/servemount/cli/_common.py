"""Shared utilities for the CLI command modules.

Provides the Rich console instance and the logging setup used by every
command.
"""

from __future__ import annotations

import logging
import sys

from rich.console import Console

console = Console()

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


def setup_logging(verbose: bool = False) -> None:
    """Send lifecycle progress to stderr.

    Args:
        verbose: Log at DEBUG instead of INFO.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
