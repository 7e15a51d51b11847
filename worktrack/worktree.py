"""Worktree management for work items.

Each work item gets a secondary checkout of the repository at
``<worktree root>/<branch name>``. The last path segment starts with the
work item ID, which is how an existing directory is matched to its item.
"""

import logging
import os
import shutil
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple, Union

from rich.console import Console

from worktrack.branches import BranchState, check_branch_state, checkout_branch_in_worktree
from worktrack.errors import CommandError, PreconditionError, WorktrackError
from worktrack.runner import GIT_COMMAND_TIMEOUT, CommandRunner

log = logging.getLogger("worktrack.worktree")
console = Console()

PathLike = Union[str, Path]


class WorktreeState(str, Enum):
    NOT_EXISTS = "not_exists"
    INVALID_PATH = "invalid_path"
    VALID_SAME_ITEM = "valid_same_item"
    VALID_DIFFERENT_ITEM = "valid_different_item"


def segment_matches_id(segment: str, work_item_id: str) -> bool:
    """True if a directory name is ``<id>`` or ``<id>-<slug>``."""
    return segment == work_item_id or segment.startswith(f"{work_item_id}-")


def check_worktree_exists(path: PathLike, work_item_id: str) -> WorktreeState:
    """Classify what is at ``path``.

    A secondary checkout has a regular ``.git`` file linking back to the
    main repository. A ``.git`` directory means a primary checkout, and a
    symlinked ``.git`` is never followed; both count as invalid here.
    """
    path = Path(path)
    if not os.path.lexists(path):
        return WorktreeState.NOT_EXISTS
    if not path.is_dir():
        return WorktreeState.INVALID_PATH

    git_path = path / ".git"
    if git_path.is_symlink() or not git_path.is_file():
        return WorktreeState.INVALID_PATH

    if segment_matches_id(path.name, work_item_id):
        return WorktreeState.VALID_SAME_ITEM
    return WorktreeState.VALID_DIFFERENT_ITEM


def owning_repo(worktree_path: PathLike) -> Optional[Path]:
    """Primary checkout that a secondary checkout belongs to.

    Reads the ``gitdir:`` line of the worktree's ``.git`` file, which points
    at ``<repo>/.git/worktrees/<name>``.
    """
    git_file = Path(worktree_path) / ".git"
    try:
        content = git_file.read_text().strip()
    except OSError:
        return None
    if not content.startswith("gitdir:"):
        return None
    gitdir = Path(content[len("gitdir:"):].strip())
    if not gitdir.is_absolute():
        gitdir = (Path(worktree_path) / gitdir).resolve()
    # <repo>/.git/worktrees/<name> -> <repo>
    return gitdir.parent.parent.parent


def find_worktree_for_branch(runner: CommandRunner, repo_dir: PathLike, branch: str) -> Optional[Path]:
    """Secondary checkout that has ``branch`` checked out, if any.

    Parses ``git worktree list --porcelain``, where each checkout is a block
    of ``worktree <path>`` followed by ``branch refs/heads/<name>`` lines.
    The primary checkout (the first block) is never returned.
    """
    output = runner.output(["git", "worktree", "list", "--porcelain"], cwd=repo_dir)
    ref = f"refs/heads/{branch}"
    current = None
    for index, block in enumerate(output.split("\n\n")):
        for line in block.splitlines():
            if line.startswith("worktree "):
                current = Path(line[len("worktree "):])
            elif line == f"branch {ref}" and index > 0:
                return current
    return None


def remove_worktree(runner: CommandRunner, worktree_path: PathLike, repo_dir: Optional[PathLike] = None) -> None:
    """Force-remove a secondary checkout and its git bookkeeping."""
    cwd = repo_dir or owning_repo(worktree_path)
    try:
        runner.mutate(
            ["git", "worktree", "remove", "--force", str(worktree_path)],
            cwd=cwd,
            timeout=GIT_COMMAND_TIMEOUT,
        )
    except CommandError as e:
        raise WorktrackError(f"failed to remove worktree at {worktree_path}: {e}") from e


def rollback_worktrees(runner: CommandRunner, created: List[Tuple[Path, Path]]) -> None:
    """Remove worktrees created so far, newest first.

    Failures are logged and the rest are still attempted; the error that
    triggered the rollback is the one reported.
    """
    for worktree_path, repo_dir in reversed(created):
        console.print(f"[dim]Rolling back worktree {worktree_path}[/dim]")
        try:
            remove_worktree(runner, worktree_path, repo_dir)
        except WorktrackError as e:
            log.warning("Rollback could not remove %s: %s", worktree_path, e)
            console.print(f"[yellow]Warning: could not remove {worktree_path}: {e}[/yellow]")


def handle_existing_worktree(
    runner: CommandRunner,
    worktree_path: PathLike,
    work_item_id: str,
    override: bool,
) -> WorktreeState:
    """Deal with whatever already occupies ``worktree_path``.

    Without ``override`` any existing path is an error naming the reason.
    With it the path is removed; in dry-run the removal is only printed.

    Returns:
        The state found before any removal
    """
    state = check_worktree_exists(worktree_path, work_item_id)

    if state == WorktreeState.NOT_EXISTS:
        return state

    if not override:
        if state == WorktreeState.VALID_SAME_ITEM:
            raise PreconditionError(
                f"worktree already exists at {worktree_path} for work item {work_item_id}: "
                "use --override to remove it and create a new one, or use the existing worktree"
            )
        if state == WorktreeState.VALID_DIFFERENT_ITEM:
            raise PreconditionError(
                f"worktree path {worktree_path} already exists for a different work item: "
                "use --override to remove it, or choose a different work item"
            )
        raise PreconditionError(
            f"path {worktree_path} already exists but is not a valid git worktree: "
            "remove it manually, or use --override to remove it automatically"
        )

    console.print(f"[yellow]Removing existing path at {worktree_path} (--override)[/yellow]")
    if state == WorktreeState.INVALID_PATH:
        if runner.dry_run:
            console.print(f"[DRY RUN] rm -rf {worktree_path}", markup=False, highlight=False)
        else:
            try:
                if Path(worktree_path).is_dir() and not Path(worktree_path).is_symlink():
                    shutil.rmtree(worktree_path)
                else:
                    os.unlink(worktree_path)
            except OSError as e:
                raise WorktrackError(f"failed to remove existing path at {worktree_path}: {e}") from e
    else:
        remove_worktree(runner, worktree_path)
    return state


def create_worktree_with_branch(
    runner: CommandRunner,
    repo_dir: PathLike,
    worktree_path: PathLike,
    branch: str,
    trunk_branch: str,
) -> None:
    """``git worktree add -b <branch> <path> <trunk>``."""
    try:
        runner.mutate(
            ["git", "worktree", "add", "-b", branch, str(worktree_path), trunk_branch],
            cwd=repo_dir,
        )
    except CommandError as e:
        raise WorktrackError(
            f"failed to create worktree at {worktree_path} with branch {branch}: {e}"
        ) from e


def create_detached_worktree(
    runner: CommandRunner,
    repo_dir: PathLike,
    worktree_path: PathLike,
    trunk_branch: str,
) -> None:
    """``git worktree add --detach <path> <trunk>``; the branch is attached later."""
    try:
        runner.mutate(
            ["git", "worktree", "add", "--detach", str(worktree_path), trunk_branch],
            cwd=repo_dir,
        )
    except CommandError as e:
        raise WorktrackError(f"failed to create worktree at {worktree_path}: {e}") from e


def create_worktree_for_branch(
    runner: CommandRunner,
    repo_dir: PathLike,
    worktree_path: PathLike,
    branch: str,
    trunk_branch: str,
    reuse_branch: bool,
) -> BranchState:
    """Create the worktree for a standalone or monorepo workspace.

    A branch that already has commits is refused. A branch still pointing
    at trunk is only reused with ``reuse_branch``; it is checked out into a
    detached worktree, which is removed again if the checkout fails.

    Returns:
        The branch state that was found
    """
    state = check_branch_state(runner, branch, trunk_branch, repo_dir)

    if state == BranchState.HAS_COMMITS:
        raise PreconditionError(
            f"branch {branch} already exists and has commits: delete it first to start "
            f"fresh (git branch -D {branch}), or use a different work item"
        )

    if state == BranchState.POINTS_TO_TRUNK:
        if not reuse_branch:
            raise PreconditionError(
                f"branch {branch} already exists and points to trunk: use --reuse-branch to "
                f"check it out in the new worktree, or delete it first (git branch -d {branch})"
            )
        create_detached_worktree(runner, repo_dir, worktree_path, trunk_branch)
        try:
            checkout_branch_in_worktree(runner, branch, worktree_path, reuse_branch=True)
        except WorktrackError:
            rollback_worktrees(runner, [(Path(worktree_path), Path(repo_dir))])
            raise
        return state

    create_worktree_with_branch(runner, repo_dir, worktree_path, branch, trunk_branch)
    return state
