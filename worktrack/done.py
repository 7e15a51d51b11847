"""``worktrack done``: merge a work item's pull request and close it out.

The flow, in order: check the primary checkout is on trunk, resolve the work
item and its pull request, run readiness checks and merge, pull trunk, move
the item to ``done`` with its merge record, then delete the branch.

Re-running on an item whose merge is already recorded is a no-op success.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console

from worktrack.branches import (
    delete_local_branch,
    determine_trunk_branch,
    get_remote_url,
    get_repo_root,
    pull_trunk,
    push_branch,
    resolve_remote_name,
    validate_on_trunk,
)
from worktrack.config import Config, load_config
from worktrack.errors import CommandError, ExternalError, PreconditionError, WorktrackError
from worktrack.frontmatter import utc_now
from worktrack.github import (
    TOKEN_ENV_VAR,
    GitHubProvider,
    PullRequest,
    PullRequestProvider,
    build_done_commit_message,
    delete_branch,
    find_pull_request_for_work_item,
    get_token,
    is_github_remote,
    merge_pull_request,
    parse_owner_repo,
    run_pr_checks,
)
from worktrack.runner import CommandRunner
from worktrack.status import build_move_commit_message, commit_status_change
from worktrack.workitems import (
    UNKNOWN,
    WorkItem,
    load_work_item,
    move_work_item_without_commit,
    update_work_item_done_metadata,
    validate_work_item_id,
)
from worktrack.worktree import find_worktree_for_branch, remove_worktree

log = logging.getLogger("worktrack.done")
console = Console()

DONE_STATUS = "done"
DEFAULT_MERGE_COMMIT_MESSAGE = "{id}: {title}"

ProviderFactory = Callable[[str, str, str, str], PullRequestProvider]


def github_provider_factory(token: str, owner: str, repo: str, base_url: str) -> PullRequestProvider:
    return GitHubProvider(token, owner, repo, base_url=base_url)


@dataclass
class DoneFlags:
    """Command-line flags for ``worktrack done``, built once by the CLI."""

    dry_run: bool = False
    merge_strategy: str = ""
    force: bool = False
    no_cleanup: bool = False


@dataclass
class MergeRecord:
    """How a work item's pull request was merged."""

    merged_at: str
    merge_commit_sha: str
    pr_number: int
    merge_strategy: str


@dataclass
class DoneContext:
    """Everything resolved for one ``done`` invocation."""

    config: Config
    flags: DoneFlags
    runner: CommandRunner
    work_item: WorkItem
    repo_root: Path
    trunk_branch: str
    remote: str
    remote_url: str
    is_github: bool
    provider: Optional[PullRequestProvider] = None
    pr: Optional[PullRequest] = None

    @property
    def merge_strategy(self) -> str:
        return self.flags.merge_strategy or self.config.done.merge_strategy or "rebase"

    @property
    def already_recorded(self) -> bool:
        """The item is in ``done`` and its merge record is written."""
        return self.work_item.status == DONE_STATUS and bool(self.work_item.meta.merged_at)


def resolve_pull_request(
    ctx: DoneContext,
    provider_factory: ProviderFactory,
) -> None:
    """Connect to the PR host and find the work item's pull request.

    Raises:
        PreconditionError: If no token is set and the item is not done yet
        ExternalError: If no pull request exists and the item is not done yet
    """
    status = ctx.work_item.status
    token = get_token()
    if not token:
        if status != DONE_STATUS:
            raise PreconditionError(f"GitHub token required for PR merge: set {TOKEN_ENV_VAR}")
        log.debug("No token; work item already done, skipping PR lookup")
        return

    owner, repo = parse_owner_repo(ctx.remote_url)
    ctx.provider = provider_factory(token, owner, repo, ctx.config.workspace.git_base_url)
    ctx.pr = find_pull_request_for_work_item(ctx.provider, ctx.work_item.id)

    if ctx.pr is None and status != DONE_STATUS:
        raise ExternalError(
            f"no pull request found for work item {ctx.work_item.id}: ensure the branch "
            "was pushed and a PR is open, or that the PR was already merged"
        )
    if ctx.pr is not None:
        log.info("Found PR #%d (%s) for %s", ctx.pr.number, ctx.pr.head_ref, ctx.work_item.id)


def build_done_context(
    work_item_id: str,
    flags: DoneFlags,
    runner: CommandRunner,
    config: Optional[Config] = None,
    cwd: Optional[Path] = None,
) -> DoneContext:
    """Validate the checkout and resolve the work item and remote."""
    cwd = cwd or Path.cwd()
    if config is None:
        config = load_config(cwd)

    repo_root = get_repo_root(runner, cwd)
    # The on-trunk check compares against the real checkout, so detection
    # inspects branches even in dry-run; it only reads.
    reader = CommandRunner(console=runner.console, extra_env=runner.extra_env) if runner.dry_run else runner
    trunk_branch = determine_trunk_branch(reader, config, "", repo_root)
    try:
        validate_on_trunk(runner, trunk_branch, repo_root, "done")
    except PreconditionError as e:
        raise PreconditionError(
            f"{e}. The feature branch is removed after merge, so run done from trunk"
        ) from e

    validate_work_item_id(work_item_id, config)
    work_item = load_work_item(work_item_id, config)

    remote = resolve_remote_name(config)
    remote_url = get_remote_url(runner, remote, repo_root)

    return DoneContext(
        config=config,
        flags=flags,
        runner=runner,
        work_item=work_item,
        repo_root=repo_root,
        trunk_branch=trunk_branch,
        remote=remote,
        remote_url=remote_url,
        is_github=is_github_remote(remote_url, config.workspace.git_base_url),
    )


def print_dry_run(ctx: DoneContext) -> None:
    if not ctx.is_github:
        message = "trunk and work item validated; remote is not GitHub, PR steps skipped."
    elif ctx.pr is not None and ctx.pr.is_closed_or_merged:
        message = f"PR #{ctx.pr.number} is already merged: work item {ctx.work_item.id} is already complete (idempotent)."
    elif ctx.pr is not None:
        message = (
            f"open PR #{ctx.pr.number} found; checks, {ctx.merge_strategy} merge and the "
            "remaining steps would run."
        )
    else:
        message = f"work item {ctx.work_item.id} is already done; no PR to merge."
    console.print(f"[DRY RUN] worktrack done: {message}", markup=False, highlight=False)


def merge_or_reuse(ctx: DoneContext) -> MergeRecord:
    """Merge an open PR, or take the record from one that is already merged."""
    pr = ctx.pr
    strategy = ctx.merge_strategy

    if pr is None:
        return MergeRecord(utc_now(), UNKNOWN, 0, strategy)

    if pr.is_closed_or_merged:
        if not (pr.merged or pr.merged_at):
            raise ExternalError(
                f"pull request #{pr.number} was closed without being merged: reopen it or open a new one"
            )
        console.print(f"[dim]PR #{pr.number} already merged, using existing metadata[/dim]")
        return MergeRecord(pr.merged_at or utc_now(), pr.merge_commit_sha or UNKNOWN, pr.number, strategy)

    console.print(f"[dim]Running PR checks for #{pr.number}...[/dim]")
    result = run_pr_checks(
        ctx.provider,
        pr,
        ctx.config.done.require_checks,
        ctx.config.done.require_comments_resolved,
        ctx.flags.force,
    )
    for overridden in result.overridden:
        console.print(f"[yellow]Overridden with --force: {overridden}[/yellow]")
    console.print("[green]✓ PR checks passed[/green]")

    done_config = ctx.config.done
    if strategy == "squash" and done_config.squash_commit_message:
        template = done_config.squash_commit_message
    else:
        template = done_config.merge_commit_message or DEFAULT_MERGE_COMMIT_MESSAGE
    message = build_done_commit_message(template, ctx.work_item.id, pr.title)

    console.print(f"[dim]Merging pull request #{pr.number} ({strategy})...[/dim]")
    sha = merge_pull_request(ctx.provider, pr, strategy, message)
    console.print("[green]✓ PR merged[/green]")
    return MergeRecord(utc_now(), sha or UNKNOWN, pr.number, strategy)


def update_work_item_to_done(ctx: DoneContext, record: Optional[MergeRecord]) -> Path:
    """Move the item to ``done``, write its merge record, commit and push trunk.

    Returns:
        Path of the work item in the done folder
    """
    runner = ctx.runner
    item = ctx.work_item
    status = item.status

    if status != DONE_STATUS:
        old_path, new_path = move_work_item_without_commit(ctx.config, item.id, DONE_STATUS)
    else:
        old_path = new_path = item.path

    if record is not None:
        item.meta = update_work_item_done_metadata(
            new_path,
            record.merged_at,
            record.merge_commit_sha,
            record.pr_number,
            record.merge_strategy,
        )

    subject, body = build_move_commit_message(ctx.config, item, status, DONE_STATUS)
    if old_path != new_path:
        commit_status_change(runner, ctx.repo_root, old_path, new_path, subject, body)
    else:
        try:
            runner.mutate(["git", "add", str(new_path)], cwd=ctx.repo_root)
            runner.mutate(["git", "commit", "-m", subject], cwd=ctx.repo_root)
        except CommandError as e:
            raise WorktrackError(f"failed to commit metadata update: {e}") from e

    try:
        push_branch(runner, ctx.repo_root, ctx.remote, ctx.trunk_branch)
    except CommandError as e:
        raise WorktrackError(f"failed to push {ctx.remote}/{ctx.trunk_branch}: {e}") from e
    return new_path


def remove_branch_worktree(ctx: DoneContext, branch: str) -> None:
    """Tear down the worktree ``start`` created for ``branch``.

    Git refuses to delete a branch that a worktree has checked out. A
    failed removal only warns; the local branch delete then reports it.
    """
    worktree_path = find_worktree_for_branch(ctx.runner, ctx.repo_root, branch)
    if worktree_path is None:
        log.debug("No worktree has %s checked out", branch)
        return
    console.print(f"[dim]Removing worktree {worktree_path}...[/dim]")
    try:
        remove_worktree(ctx.runner, worktree_path, ctx.repo_root)
    except WorktrackError as e:
        log.warning("Could not remove worktree %s: %s", worktree_path, e)
        console.print(f"[yellow]Warning: could not remove worktree {worktree_path}: {e}[/yellow]")


def cleanup_branch(ctx: DoneContext) -> None:
    """Delete the PR's branch remotely, remove its worktree, then delete it locally.

    Every step is idempotent.
    """
    if ctx.flags.no_cleanup or not ctx.config.done.cleanup_branch:
        log.debug("Branch cleanup disabled")
        return
    if ctx.pr is None or ctx.provider is None or not ctx.pr.head_ref:
        return

    branch = ctx.pr.head_ref
    console.print(f"[dim]Deleting feature branch {branch}...[/dim]")
    try:
        delete_branch(ctx.provider, branch)
    except ExternalError as e:
        raise ExternalError(f"delete branch failed: {e}") from e
    remove_branch_worktree(ctx, branch)
    delete_local_branch(ctx.runner, ctx.repo_root, branch)
    console.print("[green]✓ Branch deleted[/green]")


def run_done(
    work_item_id: str,
    flags: DoneFlags,
    runner: Optional[CommandRunner] = None,
    config: Optional[Config] = None,
    cwd: Optional[Path] = None,
    provider_factory: Optional[ProviderFactory] = None,
) -> DoneContext:
    """Complete a work item."""
    runner = runner or CommandRunner(dry_run=flags.dry_run)
    ctx = build_done_context(work_item_id, flags, runner, config=config, cwd=cwd)

    if ctx.already_recorded:
        console.print(
            f"[green]✓ Work item {ctx.work_item.id} is already complete (merged at "
            f"{ctx.work_item.meta.merged_at})[/green]"
        )
        return ctx

    if ctx.is_github:
        resolve_pull_request(ctx, provider_factory or github_provider_factory)

    if flags.dry_run:
        print_dry_run(ctx)
        return ctx

    console.print(f"Completing work item {ctx.work_item.id}")

    record = None
    if ctx.is_github:
        record = merge_or_reuse(ctx)
    else:
        log.warning("Remote %s is not a GitHub host; skipping PR steps", ctx.remote_url)
        console.print("[yellow]Remote is not a GitHub host: PR steps skipped.[/yellow]")

    console.print(f"[dim]Pulling trunk ({ctx.trunk_branch})...[/dim]")
    pull_trunk(runner, ctx.repo_root, ctx.remote, ctx.trunk_branch)
    console.print("[green]✓ Trunk up to date[/green]")

    console.print("[dim]Updating work item to done...[/dim]")
    update_work_item_to_done(ctx, record)
    console.print("[green]✓ Work item marked done and pushed[/green]")

    cleanup_branch(ctx)

    console.print(f"[green]✓ Work item {ctx.work_item.id} completed[/green]")
    return ctx
