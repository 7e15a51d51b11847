"""Start command: create a worktree and branch for a work item."""

import click

from worktrack.cli._utils import fail
from worktrack.config import STATUS_ACTIONS
from worktrack.errors import WorktrackError
from worktrack.start import StartFlags, run_start


@click.command("start")
@click.argument("work_item_id", type=str)
@click.option("--dry-run", is_flag=True, help="Show what would happen without changing anything")
@click.option("--override", is_flag=True, help="Remove an existing worktree at the target path")
@click.option("--skip-status-check", is_flag=True, help="Restart an item already in the target status")
@click.option("--reuse-branch", is_flag=True, help="Check out an existing branch that still points to trunk")
@click.option("--no-ide", is_flag=True, help="Do not open an IDE")
@click.option("--ide", "ide", default="", help="IDE command to open the worktree with")
@click.option("--trunk-branch", default="", help="Trunk branch to base the work item branch on")
@click.option(
    "--status-action",
    type=click.Choice(STATUS_ACTIONS),
    default=None,
    help="How to record the status change (overrides start.status_action)",
)
def start(
    work_item_id: str,
    dry_run: bool,
    override: bool,
    skip_status_check: bool,
    reuse_branch: bool,
    no_ide: bool,
    ide: str,
    trunk_branch: str,
    status_action: str,
) -> None:
    """Start work on WORK_ITEM_ID in a new worktree.

    Example:
        worktrack start 014
        worktrack start 014 --dry-run
    """
    flags = StartFlags(
        dry_run=dry_run,
        override=override,
        skip_status_check=skip_status_check,
        reuse_branch=reuse_branch,
        no_ide=no_ide,
        ide=ide,
        trunk_branch=trunk_branch,
        status_action=status_action or "",
    )
    try:
        run_start(work_item_id, flags)
    except WorktrackError as e:
        fail(e)
