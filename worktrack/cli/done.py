"""Done command: merge a work item's pull request and mark it done."""

import click

from worktrack.cli._utils import fail
from worktrack.config import MERGE_STRATEGIES
from worktrack.done import DoneFlags, run_done
from worktrack.errors import WorktrackError


@click.command("done")
@click.argument("work_item_id", type=str)
@click.option("--dry-run", is_flag=True, help="Validate and show what would happen without merging")
@click.option(
    "--merge-strategy",
    type=click.Choice(MERGE_STRATEGIES),
    default=None,
    help="Merge method (overrides done.merge_strategy)",
)
@click.option("--force", is_flag=True, help="Merge even if checks fail or review comments remain")
@click.option("--no-cleanup", is_flag=True, help="Keep the feature branch after merging")
def done(work_item_id: str, dry_run: bool, merge_strategy: str, force: bool, no_cleanup: bool) -> None:
    """Merge the pull request for WORK_ITEM_ID and move it to done.

    Requires WORKTRACK_GITHUB_TOKEN unless the item is already done.
    """
    flags = DoneFlags(
        dry_run=dry_run,
        merge_strategy=merge_strategy or "",
        force=force,
        no_cleanup=no_cleanup,
    )
    try:
        run_done(work_item_id, flags)
    except WorktrackError as e:
        fail(e)
