"""Status transitions for work items during ``start`` and ``done``.

The configured (or per-invocation) status action decides whether moving a
work item to its target status is committed, and where:

- ``none``: never touch status or commit
- ``commit_only``: move on trunk and commit locally
- ``commit_and_push``: move on trunk, commit, push trunk
- ``commit_only_branch``: move and commit inside the new worktree, on the
  work item branch
"""

import logging
import re
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from rich.console import Console

from worktrack.branches import push_branch, remote_exists
from worktrack.config import Config
from worktrack.errors import CommandError, PreconditionError, ValidationError, WorktrackError
from worktrack.runner import CommandRunner
from worktrack.workitems import UNKNOWN, WorkItem, move_work_item_without_commit

log = logging.getLogger("worktrack.status")
console = Console()

DEFAULT_STATUS_COMMIT_MESSAGE = "Move {type} {id} to {move_to}"
MAX_COMMIT_MESSAGE_LENGTH = 1000

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

PathLike = Union[str, Path]


class StatusAction(str, Enum):
    NONE = "none"
    COMMIT_ONLY = "commit_only"
    COMMIT_ONLY_BRANCH = "commit_only_branch"
    COMMIT_AND_PUSH = "commit_and_push"


def get_effective_status_action(config: Config, flag_value: Optional[str] = None) -> StatusAction:
    """The per-invocation flag wins over ``start.status_action``.

    Raises:
        ValidationError: If the value is not a recognized action
    """
    value = flag_value or config.start.status_action
    try:
        return StatusAction(value)
    except ValueError as e:
        valid = ", ".join(a.value for a in StatusAction)
        raise ValidationError(f"invalid status action '{value}': use one of {valid}") from e


def perform_status_check(
    work_item: WorkItem,
    target_status: str,
    action: StatusAction,
    skip_status_check: bool,
) -> bool:
    """Decide whether the status update should be skipped.

    Returns:
        True when later status steps must be no-ops

    Raises:
        PreconditionError: If the item is already at the target status and
            the operator did not pass --skip-status-check
    """
    if action == StatusAction.NONE:
        return True

    if work_item.status != target_status:
        return False

    if skip_status_check:
        console.print(
            f"[dim]Skipping status update (--skip-status-check): work item already in "
            f"'{target_status}' status[/dim]"
        )
        return True

    raise PreconditionError(
        f"work item {work_item.id} is already in '{target_status}' status: "
        "use --skip-status-check to restart work on it"
    )


def sanitize_commit_message(message: str) -> str:
    """Collapse a commit message to one line and validate it.

    Raises:
        ValidationError: If the message is empty, too long, or contains
            control characters
    """
    message = message.replace("\r", "").replace("\n", " ").strip()
    if not message:
        raise ValidationError("commit message cannot be empty")
    if len(message) > MAX_COMMIT_MESSAGE_LENGTH:
        raise ValidationError(f"commit message too long (max {MAX_COMMIT_MESSAGE_LENGTH} characters)")
    if _CONTROL_CHARS.search(message):
        raise ValidationError("commit message contains control characters")
    return message


def _fill(template: str, values: dict) -> str:
    for key, value in values.items():
        template = template.replace("{" + key + "}", value)
    return template


def build_status_commit_message(config: Config, work_item: WorkItem, target_status: str) -> str:
    """Expand ``start.status_commit_message``.

    Placeholders: ``{id}``, ``{type}``, ``{title}``, ``{move_to}``. A missing
    kind renders as ``unknown`` and a missing title as an empty string.
    """
    template = config.start.status_commit_message or DEFAULT_STATUS_COMMIT_MESSAGE
    message = _fill(
        template,
        {
            "type": work_item.meta.kind or UNKNOWN,
            "id": work_item.id,
            "title": work_item.meta.title or "",
            "move_to": target_status,
        },
    )
    return sanitize_commit_message(message)


def build_move_commit_message(
    config: Config,
    work_item: WorkItem,
    current_status: str,
    target_status: str,
) -> tuple:
    """Subject and body for a status move, from ``commit.move_*_template``.

    Returns:
        Tuple of (subject, body)
    """
    values = {
        "type": work_item.meta.kind or UNKNOWN,
        "id": work_item.id,
        "title": work_item.meta.title or "",
        "current_status": current_status,
        "target_status": target_status,
    }
    subject = _fill(config.commit.move_subject_template, values).strip()
    body = _fill(config.commit.move_body_template, values).strip()
    return sanitize_commit_message(subject), body


def commit_status_change(
    runner: CommandRunner,
    repo_dir: PathLike,
    old_path: Path,
    new_path: Path,
    message: str,
    body: str = "",
) -> None:
    """Stage a rename of a work item file and commit it.

    The removal of ``old_path`` is staged with ``git rm --cached``; if the
    file was never tracked the parent folder's deletions are staged instead.
    """
    try:
        runner.mutate(["git", "rm", "--cached", "--quiet", str(old_path)], cwd=repo_dir)
    except CommandError as e:
        log.debug("git rm --cached %s failed (%s); staging deletions in folder", old_path, e)
        try:
            runner.mutate(["git", "add", "-u", str(old_path.parent)], cwd=repo_dir)
        except CommandError as inner:
            log.debug("Nothing to stage for %s: %s", old_path.parent, inner)

    args = ["git", "commit", "-m", message]
    if body:
        args += ["-m", body]
    try:
        runner.mutate(["git", "add", str(new_path)], cwd=repo_dir)
        runner.mutate(args, cwd=repo_dir)
    except CommandError as e:
        raise WorktrackError(f"failed to commit status change: {e}") from e


def perform_status_update(
    runner: CommandRunner,
    config: Config,
    work_item: WorkItem,
    action: StatusAction,
    repo_root: Path,
    trunk_branch: str,
    remote: str,
) -> Optional[Path]:
    """Move the work item on trunk before the worktree exists.

    Only ``commit_only`` and ``commit_and_push`` act here. A push is skipped
    with a warning when the remote does not exist.

    Returns:
        The new work item path, or None if nothing was done
    """
    if action not in (StatusAction.COMMIT_ONLY, StatusAction.COMMIT_AND_PUSH):
        return None

    target_status = config.start.move_to
    console.print(f"[dim]Moving work item {work_item.id} to '{target_status}'...[/dim]")

    message = build_status_commit_message(config, work_item, target_status)
    old_path, new_path = move_work_item_without_commit(
        config, work_item.id, target_status, dry_run=runner.dry_run
    )
    commit_status_change(runner, repo_root, old_path, new_path, message)
    console.print(f"[green]✓ Committed status change: {message}[/green]")

    if action == StatusAction.COMMIT_AND_PUSH:
        if runner.dry_run or remote_exists(runner, remote, repo_root):
            try:
                push_branch(runner, repo_root, remote, trunk_branch)
            except CommandError as e:
                raise WorktrackError(
                    f"failed to push status change to {remote}/{trunk_branch}: {e}"
                ) from e
            console.print(f"[green]✓ Pushed status change to {remote}/{trunk_branch}[/green]")
        else:
            log.warning("No remote '%s'; status change committed locally only", remote)
            console.print(
                f"[yellow]Warning: no remote '{remote}' configured. Skipping push; "
                "the status change was committed locally.[/yellow]"
            )

    return new_path


def config_for_checkout(config: Config, repo_root: Path, checkout: Path) -> Config:
    """Copy of ``config`` whose work folder points into another checkout."""
    try:
        relative = Path(config.config_dir).resolve().relative_to(Path(repo_root).resolve())
    except ValueError:
        relative = Path(".")
    return config.model_copy(update={"config_dir": Path(checkout) / relative})


def perform_status_update_on_branch(
    runner: CommandRunner,
    config: Config,
    work_item: WorkItem,
    action: StatusAction,
    repo_root: Path,
    worktree_path: Path,
) -> Optional[Path]:
    """Move and commit the work item inside the new worktree.

    Only ``commit_only_branch`` acts here, so the commit lands on the work
    item branch and trunk is left alone.
    """
    if action != StatusAction.COMMIT_ONLY_BRANCH:
        return None

    target_status = config.start.move_to
    console.print(f"[dim]Moving work item {work_item.id} to '{target_status}' on its branch...[/dim]")

    message = build_status_commit_message(config, work_item, target_status)
    branch_config = config_for_checkout(config, repo_root, worktree_path)
    if runner.dry_run:
        old_path = Path(worktree_path) / work_item.path.resolve().relative_to(Path(repo_root).resolve())
        new_path = branch_config.work_folder_path / (config.status_folder(target_status) or "") / old_path.name
        console.print(
            f"[DRY RUN] move {new_path} to status {target_status} (in {worktree_path})",
            markup=False,
            highlight=False,
        )
    else:
        old_path, new_path = move_work_item_without_commit(branch_config, work_item.id, target_status)
    commit_status_change(runner, worktree_path, old_path, new_path, message)
    console.print(f"[green]✓ Committed status change on branch: {message}[/green]")
    return new_path
