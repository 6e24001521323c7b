"""Main CLI entry point.

Defines the Click group and shared utilities.
"""

from __future__ import annotations

import click

from chunkwise._version import __version__


@click.group()
@click.version_option(version=__version__, prog_name="chunkwise")
def cli() -> None:
    """Chunkwise: windowed randomization and chunk paging for frame-level training data."""


# Import and register subcommands
from chunkwise.cli.scan import scan  # noqa: E402

cli.add_command(scan)
