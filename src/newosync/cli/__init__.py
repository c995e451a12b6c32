"""
newo-sync CLI -- mirror NEWO projects to disk and push local edits back.

Each command family lives in its own module and is registered on the
main Click group through a ``register_*_commands`` function.

Entry point: newosync.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="newo-sync")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging on stderr.")
def main(verbose):
    """newo-sync -- two-way sync between NEWO and a local directory.

    Pull projects, agents, flows and skills into newo_customers/, edit
    them, check status, push the changes back.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all commands from modular files
# ---------------------------------------------------------------------------

from .sync_cmd import register_sync_commands
from .auth_cmd import register_auth_commands

register_sync_commands(main)
register_auth_commands(main)
