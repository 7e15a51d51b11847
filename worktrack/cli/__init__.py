"""CLI for worktrack."""

import click

from worktrack import __version__
from worktrack.logging_config import setup_logging


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show informational log messages")
@click.option("--debug", is_flag=True, help="Show debug log messages, including every git command")
def main(verbose: bool, debug: bool) -> None:
    """worktrack: git worktrees for markdown work items

    Start work on an item in its own worktree and branch, then merge its
    pull request and close it out when it is done.
    """
    setup_logging(verbose=verbose, debug=debug)


# Import and register command modules
from worktrack.cli import done, start

main.add_command(start.start)
main.add_command(done.done)
