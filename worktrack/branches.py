"""Branch lifecycle: trunk and remote resolution, branch state, pulls.

All functions use a CommandRunner to call git directly. Read-only queries
run even in dry-run; anything that changes a repository goes through
``runner.mutate``.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from worktrack.config import Config, ProjectConfig
from worktrack.errors import CommandError, PreconditionError, WorktrackError
from worktrack.runner import GIT_COMMAND_TIMEOUT, GIT_NETWORK_TIMEOUT, CommandRunner

log = logging.getLogger("worktrack.branches")

DEFAULT_TRUNK_BRANCH = "main"
FALLBACK_TRUNK_BRANCH = "master"
DEFAULT_REMOTE = "origin"

PathLike = Union[str, Path]

_NETWORK_ERRORS = ("Could not resolve host", "unable to access", "Connection refused")


class BranchState(str, Enum):
    NOT_EXISTS = "not_exists"
    POINTS_TO_TRUNK = "points_to_trunk"
    HAS_COMMITS = "has_commits"


def get_repo_root(runner: CommandRunner, cwd: Optional[PathLike] = None) -> Path:
    """Top-level directory of the repository containing ``cwd``.

    Raises:
        PreconditionError: If ``cwd`` is not inside a git repository
    """
    try:
        return Path(runner.output(["git", "rev-parse", "--show-toplevel"], cwd=cwd))
    except CommandError as e:
        raise PreconditionError(
            "not a git repository: run this command from within a git repository"
        ) from e


def get_current_branch(runner: CommandRunner, repo_dir: PathLike) -> str:
    try:
        return runner.output(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=repo_dir)
    except CommandError as e:
        raise PreconditionError(f"failed to determine current branch: {e}") from e


def branch_exists(runner: CommandRunner, branch: str, repo_dir: PathLike) -> bool:
    """True if ``refs/heads/<branch>`` exists.

    Raises:
        CommandError: If git fails for a reason other than a missing ref
    """
    args = ["git", "show-ref", "--verify", "--quiet", f"refs/heads/{branch}"]
    result = runner.run(args, cwd=repo_dir, check=False)
    if result.returncode == 0:
        return True
    if result.returncode == 1:
        return False
    raise CommandError(args, returncode=result.returncode, stderr=result.stderr or "", cwd=str(repo_dir))


def resolve_remote_name(config: Config, project: Optional[ProjectConfig] = None) -> str:
    """Remote name: project override, then ``git.remote``, then ``origin``."""
    if project is not None and project.remote:
        return project.remote
    if config.git.remote:
        return config.git.remote
    return DEFAULT_REMOTE


def auto_detect_trunk_branch(runner: CommandRunner, repo_dir: PathLike) -> str:
    """Pick ``main`` or ``master``, whichever exists locally.

    In dry-run the repository is not inspected and ``main`` is returned.

    Raises:
        PreconditionError: If both exist (ambiguous) or neither does
    """
    if runner.dry_run:
        return DEFAULT_TRUNK_BRANCH

    has_main = branch_exists(runner, DEFAULT_TRUNK_BRANCH, repo_dir)
    has_master = branch_exists(runner, FALLBACK_TRUNK_BRANCH, repo_dir)

    if has_main and has_master:
        raise PreconditionError(
            f"both '{DEFAULT_TRUNK_BRANCH}' and '{FALLBACK_TRUNK_BRANCH}' branches exist: "
            "cannot auto-detect the trunk branch. Set git.trunk_branch in worktrack.yml"
        )
    if has_main:
        return DEFAULT_TRUNK_BRANCH
    if has_master:
        return FALLBACK_TRUNK_BRANCH
    raise PreconditionError(
        f"trunk branch not found: neither '{DEFAULT_TRUNK_BRANCH}' nor "
        f"'{FALLBACK_TRUNK_BRANCH}' exists. Create one or set git.trunk_branch in worktrack.yml"
    )


def determine_trunk_branch(
    runner: CommandRunner,
    config: Config,
    flag_value: str = "",
    repo_dir: Optional[PathLike] = None,
    project: Optional[ProjectConfig] = None,
) -> str:
    """Resolve the trunk branch.

    Precedence: explicit flag, project ``trunk_branch``, global
    ``git.trunk_branch``, then auto-detection. The first non-empty value is
    returned as given and later sources are not looked at.
    """
    if flag_value:
        log.debug("Trunk branch from flag: %s", flag_value)
        return flag_value
    if project is not None and project.trunk_branch:
        log.debug("Trunk branch from project %s: %s", project.name, project.trunk_branch)
        return project.trunk_branch
    if config.git.trunk_branch:
        log.debug("Trunk branch from config: %s", config.git.trunk_branch)
        return config.git.trunk_branch
    return auto_detect_trunk_branch(runner, repo_dir or Path.cwd())


def validate_on_trunk(runner: CommandRunner, trunk_branch: str, repo_dir: PathLike, command: str) -> None:
    """Require the primary checkout to be on the trunk branch.

    Raises:
        PreconditionError: If another branch is checked out
    """
    current = get_current_branch(runner, repo_dir)
    if current != trunk_branch:
        raise PreconditionError(
            f"'worktrack {command}' must be run from the trunk branch '{trunk_branch}', "
            f"currently on '{current}': check out {trunk_branch} and try again"
        )


def has_uncommitted_changes(runner: CommandRunner, repo_dir: PathLike) -> bool:
    return bool(runner.output(["git", "status", "--porcelain"], cwd=repo_dir))


def remote_exists(runner: CommandRunner, remote: str, repo_dir: PathLike) -> bool:
    return runner.succeeds(["git", "remote", "get-url", remote], cwd=repo_dir)


def get_remote_url(runner: CommandRunner, remote: str, repo_dir: PathLike) -> str:
    """URL of ``remote``.

    Raises:
        PreconditionError: If the remote is not configured
    """
    try:
        return runner.output(["git", "remote", "get-url", remote], cwd=repo_dir)
    except CommandError as e:
        raise PreconditionError(f"remote '{remote}' is not configured") from e


def pull_latest_changes(runner: CommandRunner, remote: str, trunk_branch: str, repo_dir: PathLike) -> None:
    """Fetch ``remote/trunk`` and merge it into the current branch.

    Raises:
        WorktrackError: With a specific remedy for network failures, merge
            conflicts and diverged history
    """
    try:
        runner.mutate(["git", "fetch", remote, trunk_branch], cwd=repo_dir, timeout=GIT_NETWORK_TIMEOUT)
    except CommandError as e:
        if any(marker in e.stderr for marker in _NETWORK_ERRORS):
            raise WorktrackError(
                f"failed to fetch changes from {remote}: network error. "
                f"Check your connection and try again: {e}"
            ) from e
        raise WorktrackError(f"failed to fetch changes from {remote}/{trunk_branch}: {e}") from e

    try:
        runner.mutate(["git", "merge", f"{remote}/{trunk_branch}"], cwd=repo_dir)
    except CommandError as e:
        details = f"{e.stdout} {e.stderr}"
        if "CONFLICT" in details or "Automatic merge failed" in details:
            raise WorktrackError(
                f"failed to merge latest changes from {remote}/{trunk_branch}: merge conflicts "
                "detected. Resolve the conflicts manually and try again"
            ) from e
        if "diverged" in details:
            raise WorktrackError(
                f"trunk branch has diverged from {remote}/{trunk_branch}: rebase or merge "
                "manually before starting work"
            ) from e
        raise WorktrackError(f"failed to merge changes from {remote}/{trunk_branch}: {e}") from e


def pull_trunk(runner: CommandRunner, repo_dir: PathLike, remote: str, trunk_branch: str) -> None:
    """``git pull <remote> <trunk>`` in the primary checkout."""
    try:
        runner.mutate(["git", "pull", remote, trunk_branch], cwd=repo_dir, timeout=GIT_NETWORK_TIMEOUT)
    except CommandError as e:
        raise WorktrackError(f"pull trunk failed: {e}") from e


def push_branch(runner: CommandRunner, repo_dir: PathLike, remote: str, branch: str) -> None:
    runner.mutate(["git", "push", remote, branch], cwd=repo_dir, timeout=GIT_NETWORK_TIMEOUT)


def check_branch_state(
    runner: CommandRunner,
    branch: str,
    trunk_branch: str,
    repo_dir: PathLike,
) -> BranchState:
    """Classify an existing work item branch relative to trunk.

    In dry-run nothing is inspected and the branch is reported missing.
    """
    if runner.dry_run:
        return BranchState.NOT_EXISTS

    if not branch_exists(runner, branch, repo_dir):
        return BranchState.NOT_EXISTS

    branch_sha = runner.output(["git", "rev-parse", branch], cwd=repo_dir)
    trunk_sha = runner.output(["git", "rev-parse", trunk_branch], cwd=repo_dir)
    if branch_sha == trunk_sha:
        return BranchState.POINTS_TO_TRUNK
    return BranchState.HAS_COMMITS


def checkout_branch_in_worktree(
    runner: CommandRunner,
    branch: str,
    worktree_path: PathLike,
    reuse_branch: bool,
) -> None:
    """Check out ``branch`` (or create it) inside a detached worktree."""
    args = ["git", "checkout", branch] if reuse_branch else ["git", "checkout", "-b", branch]
    try:
        runner.mutate(args, cwd=worktree_path, timeout=GIT_COMMAND_TIMEOUT)
    except CommandError as e:
        verb = "check out" if reuse_branch else "create"
        raise WorktrackError(f"failed to {verb} branch '{branch}' in {worktree_path}: {e}") from e


def delete_local_branch(runner: CommandRunner, repo_dir: PathLike, branch: str) -> bool:
    """Force-delete a local branch. A missing branch is not an error.

    Returns:
        True if a branch was deleted (or would be, in dry-run)
    """
    if not runner.dry_run and not branch_exists(runner, branch, repo_dir):
        log.debug("Local branch %s already absent", branch)
        return False
    try:
        runner.mutate(["git", "branch", "-D", branch], cwd=repo_dir)
    except CommandError as e:
        if "not found" in e.stderr:
            return False
        raise WorktrackError(f"failed to delete local branch {branch}: {e}") from e
    return True
