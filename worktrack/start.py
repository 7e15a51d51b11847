"""``worktrack start``: provision an isolated workspace for a work item.

The flow, in order: resolve the work item and workspace layout, make sure the
primary checkout is on an up-to-date trunk, apply the status policy, create
the worktree(s) and branch, run setup commands, then open the editor.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from rich.console import Console

from worktrack.branches import (
    determine_trunk_branch,
    get_repo_root,
    has_uncommitted_changes,
    pull_latest_changes,
    remote_exists,
    resolve_remote_name,
    validate_on_trunk,
)
from worktrack.config import Config, load_config
from worktrack.errors import PreconditionError
from worktrack.ide import launch_ide
from worktrack.polyrepo import (
    MAIN_MOUNT,
    PolyrepoProject,
    create_polyrepo_worktrees,
    pull_all_projects,
    resolve_polyrepo_projects,
)
from worktrack.runner import CommandRunner
from worktrack.setup_commands import execute_setup_commands
from worktrack.status import (
    StatusAction,
    get_effective_status_action,
    perform_status_check,
    perform_status_update,
    perform_status_update_on_branch,
)
from worktrack.workitems import (
    WorkItem,
    branch_name_for,
    load_work_item,
    sanitize_title,
    validate_work_item_id,
)
from worktrack.workspace import WorkspaceBehavior, derive_worktree_root, infer_workspace_behavior
from worktrack.worktree import create_worktree_for_branch, handle_existing_worktree

log = logging.getLogger("worktrack.start")
console = Console()


@dataclass
class StartFlags:
    """Command-line flags for ``worktrack start``, built once by the CLI."""

    dry_run: bool = False
    override: bool = False
    skip_status_check: bool = False
    reuse_branch: bool = False
    no_ide: bool = False
    ide: str = ""
    trunk_branch: str = ""
    status_action: str = ""


@dataclass
class StartContext:
    """Everything resolved for one ``start`` invocation."""

    config: Config
    flags: StartFlags
    runner: CommandRunner
    work_item: WorkItem
    repo_root: Path
    behavior: WorkspaceBehavior
    worktree_root: Path
    slug: str
    branch: str
    worktree_path: Path
    trunk_branch: str
    remote: str
    status_action: StatusAction
    skip_status_update: bool = False
    projects: List[PolyrepoProject] = field(default_factory=list)

    @property
    def main_worktree_path(self) -> Path:
        """Checkout of the primary repository for this work item."""
        if self.behavior == WorkspaceBehavior.POLYREPO:
            return self.worktree_path / MAIN_MOUNT
        return self.worktree_path


def build_start_context(
    work_item_id: str,
    flags: StartFlags,
    runner: CommandRunner,
    config: Optional[Config] = None,
    cwd: Optional[Path] = None,
) -> StartContext:
    """Resolve the work item, workspace layout and names without changing anything."""
    cwd = cwd or Path.cwd()
    if config is None:
        config = load_config(cwd)

    validate_work_item_id(work_item_id, config)
    work_item = load_work_item(work_item_id, config)
    status_action = get_effective_status_action(config, flags.status_action)

    repo_root = get_repo_root(runner, cwd)
    behavior = infer_workspace_behavior(config, repo_root)
    worktree_root = Path(derive_worktree_root(config, repo_root, behavior))
    log.debug("Workspace behavior %s, worktree root %s", behavior.value, worktree_root)

    slug = sanitize_title(work_item.meta.title, work_item_id)
    branch = branch_name_for(work_item_id, slug)

    trunk_branch = determine_trunk_branch(runner, config, flags.trunk_branch, repo_root)
    remote = resolve_remote_name(config)

    projects: List[PolyrepoProject] = []
    if behavior == WorkspaceBehavior.POLYREPO:
        projects = resolve_polyrepo_projects(config, repo_root) or []

    return StartContext(
        config=config,
        flags=flags,
        runner=runner,
        work_item=work_item,
        repo_root=repo_root,
        behavior=behavior,
        worktree_root=worktree_root,
        slug=slug,
        branch=branch,
        worktree_path=worktree_root / branch,
        trunk_branch=trunk_branch,
        remote=remote,
        status_action=status_action,
        projects=projects,
    )


def prepare_trunk(ctx: StartContext) -> None:
    """Require a clean trunk checkout and bring it up to date."""
    validate_on_trunk(ctx.runner, ctx.trunk_branch, ctx.repo_root, "start")
    if has_uncommitted_changes(ctx.runner, ctx.repo_root):
        raise PreconditionError(
            "trunk branch has uncommitted changes: commit or stash them before "
            "starting work on a new item"
        )

    if ctx.behavior == WorkspaceBehavior.POLYREPO:
        pull_all_projects(ctx.runner, ctx.projects, ctx.repo_root, ctx.trunk_branch, ctx.remote)
        return

    if not remote_exists(ctx.runner, ctx.remote, ctx.repo_root):
        log.warning("No remote '%s'; skipping pull", ctx.remote)
        console.print(
            f"[yellow]Warning: no remote '{ctx.remote}' configured. Skipping pull; "
            "the worktree is based on the local trunk.[/yellow]"
        )
        return

    console.print(f"[dim]Pulling latest changes from {ctx.remote}/{ctx.trunk_branch}...[/dim]")
    pull_latest_changes(ctx.runner, ctx.remote, ctx.trunk_branch, ctx.repo_root)


def create_worktrees(ctx: StartContext) -> Path:
    """Create the worktree(s) and branch for the work item.

    Returns:
        The main worktree path
    """
    if ctx.runner.dry_run:
        console.print(
            f"[DRY RUN] Would create worktree at {ctx.worktree_path} on branch {ctx.branch}",
            markup=False,
            highlight=False,
        )
    else:
        try:
            ctx.worktree_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PreconditionError(f"failed to create worktree root {ctx.worktree_root}: {e}") from e

    if ctx.behavior == WorkspaceBehavior.POLYREPO:
        return create_polyrepo_worktrees(
            ctx.runner,
            ctx.projects,
            ctx.repo_root,
            ctx.trunk_branch,
            ctx.worktree_path,
            ctx.branch,
            ctx.work_item.id,
            ctx.flags.override,
            ctx.flags.reuse_branch,
        )

    handle_existing_worktree(ctx.runner, ctx.worktree_path, ctx.work_item.id, ctx.flags.override)
    create_worktree_for_branch(
        ctx.runner,
        ctx.repo_root,
        ctx.worktree_path,
        ctx.branch,
        ctx.trunk_branch,
        ctx.flags.reuse_branch,
    )
    return ctx.worktree_path


def run_start(
    work_item_id: str,
    flags: StartFlags,
    runner: Optional[CommandRunner] = None,
    config: Optional[Config] = None,
    cwd: Optional[Path] = None,
) -> StartContext:
    """Provision the workspace for a work item.

    Returns:
        The resolved context, for callers that report on it
    """
    runner = runner or CommandRunner(dry_run=flags.dry_run)
    ctx = build_start_context(work_item_id, flags, runner, config=config, cwd=cwd)

    console.print(f"Starting work on {ctx.work_item.id}: {ctx.work_item.title or '(untitled)'}")
    console.print(f"[dim]Branch: {ctx.branch}[/dim]")
    console.print(f"[dim]Worktree: {ctx.worktree_path}[/dim]")

    if not runner.dry_run:
        prepare_trunk(ctx)

    ctx.skip_status_update = perform_status_check(
        ctx.work_item,
        ctx.config.start.move_to,
        ctx.status_action,
        flags.skip_status_check,
    )

    if not ctx.skip_status_update:
        perform_status_update(
            runner,
            ctx.config,
            ctx.work_item,
            ctx.status_action,
            ctx.repo_root,
            ctx.trunk_branch,
            ctx.remote,
        )

    main_path = create_worktrees(ctx)

    if not ctx.skip_status_update:
        perform_status_update_on_branch(
            runner,
            ctx.config,
            ctx.work_item,
            ctx.status_action,
            ctx.repo_root,
            main_path,
        )

    if runner.dry_run:
        console.print("[DRY RUN] No changes were made.", markup=False, highlight=False)
    else:
        console.print(f"[green]✓ Created worktree for {ctx.work_item.id} at {main_path}[/green]")
        console.print(f"[green]✓ Branch {ctx.branch}[/green]")

    launch_ide(ctx.config, os.fspath(ctx.worktree_path), flags.no_ide, flags.ide, runner.dry_run)

    polyrepo_base = ctx.worktree_path if ctx.behavior == WorkspaceBehavior.POLYREPO else None
    execute_setup_commands(runner, ctx.config, main_path, polyrepo_base)

    return ctx
