"""Polyrepo workspaces: projects checked out next to the primary repository.

For a polyrepo work item the layout under the worktree root is::

    <root>/<branch>/main          primary repository
    <root>/<branch>/<mount>       one per project repository
    <root>/<branch>/<repo-root>   one per shared repo_root group

Projects that declare the same ``repo_root`` share a single checkout, so
every per-repository step runs once per group.
"""

import logging
import os
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from rich.console import Console

from worktrack.branches import (
    BranchState,
    auto_detect_trunk_branch,
    check_branch_state,
    checkout_branch_in_worktree,
    pull_latest_changes,
    remote_exists,
    resolve_remote_name,
)
from worktrack.config import Config, ProjectConfig
from worktrack.errors import PreconditionError, WorktrackError
from worktrack.runner import CommandRunner
from worktrack.workitems import kebab_case
from worktrack.workspace import is_external_git_repo, resolve_project_path
from worktrack.worktree import (
    WorktreeState,
    check_worktree_exists,
    create_detached_worktree,
    handle_existing_worktree,
    rollback_worktrees,
)

log = logging.getLogger("worktrack.polyrepo")
console = Console()

MAIN_MOUNT = "main"


@dataclass
class PolyrepoProject:
    """A configured project with its paths and overrides resolved."""

    name: str
    path: str
    mount: str
    repo_root: str = ""
    repo_root_path: str = ""
    trunk_branch: str = ""
    remote: str = "origin"
    setup: str = ""

    @property
    def repo_path(self) -> str:
        """Repository the project's worktree is created from."""
        return self.repo_root_path or self.path


def resolve_polyrepo_projects(config: Config, repo_root: Path) -> Optional[List[PolyrepoProject]]:
    """Resolve every configured project against the primary checkout.

    Returns:
        The projects, or None when no projects are configured
    """
    if not config.workspace.projects:
        return None

    projects = []
    for p in config.workspace.projects:
        projects.append(
            PolyrepoProject(
                name=p.name,
                path=resolve_project_path(p.path, repo_root) if p.path else "",
                mount=p.mount or p.name,
                repo_root=p.repo_root,
                repo_root_path=resolve_project_path(p.repo_root, repo_root) if p.repo_root else "",
                trunk_branch=p.trunk_branch or config.git.trunk_branch,
                remote=resolve_remote_name(config, p),
                setup=p.setup,
            )
        )
    return projects


def group_projects_by_repo_root(projects: List[PolyrepoProject]) -> Dict[str, List[PolyrepoProject]]:
    """Group projects by ``repo_root``; projects without one are keyed by path."""
    groups: Dict[str, List[PolyrepoProject]] = OrderedDict()
    for project in projects:
        key = project.repo_root or project.path
        groups.setdefault(key, []).append(project)
    return groups


def validate_polyrepo_projects(projects: List[PolyrepoProject], dry_run: bool) -> None:
    """Every project with a path must be backed by a git repository (its repo_root when set).

    Dry-run skips the check so previews never touch the filesystem.

    Raises:
        PreconditionError: Naming the first missing project
    """
    if dry_run:
        return
    for project in projects:
        if project.path and not is_external_git_repo(project.repo_path):
            raise PreconditionError(
                f"project repository not found at {project.repo_path} (project '{project.name}'): "
                "the path does not exist or is not a git repository. Fix the project "
                "path in worktrack.yml"
            )


def project_worktree_path(
    project: PolyrepoProject,
    base_path: Path,
    processed_roots: Set[str],
) -> Optional[Path]:
    """Worktree path for a project, or None if its repo_root group is done."""
    if project.repo_root:
        if project.repo_root in processed_roots:
            return None
        processed_roots.add(project.repo_root)
        return base_path / kebab_case(os.path.basename(os.path.normpath(project.repo_root)))
    return base_path / project.mount


def get_project_setup_path(project: ProjectConfig, base_path: Path, processed_roots: Set[str]) -> str:
    """Directory a project's setup command runs in.

    Empty when the project has no path, or when another project of the same
    repo_root group has already claimed the shared checkout.
    """
    if not project.path:
        return ""
    if project.repo_root:
        if project.repo_root in processed_roots:
            return ""
        processed_roots.add(project.repo_root)
        return str(base_path / kebab_case(os.path.basename(os.path.normpath(project.repo_root))))
    return str(base_path / (project.mount or project.name))


def project_checkouts(projects: List[PolyrepoProject], base_path: Path) -> List[Tuple[PolyrepoProject, Path]]:
    """One (project, worktree path) pair per repository to check out."""
    processed: Set[str] = set()
    checkouts = []
    for project in projects:
        if not project.path:
            continue
        worktree_path = project_worktree_path(project, base_path, processed)
        if worktree_path is not None:
            checkouts.append((project, worktree_path))
    return checkouts


def project_trunk_branch(runner: CommandRunner, project: PolyrepoProject) -> str:
    if project.trunk_branch:
        return project.trunk_branch
    try:
        return auto_detect_trunk_branch(runner, project.repo_path)
    except WorktrackError as e:
        raise PreconditionError(f"failed to detect trunk branch for project {project.name}: {e}") from e


def pull_all_projects(
    runner: CommandRunner,
    projects: List[PolyrepoProject],
    repo_root: Path,
    trunk_branch: str,
    remote: str,
) -> None:
    """Bring the primary repository and every project repository up to date."""
    if remote_exists(runner, remote, repo_root) or runner.dry_run:
        console.print(f"[dim]Pulling latest changes for main project from {remote}/{trunk_branch}...[/dim]")
        pull_latest_changes(runner, remote, trunk_branch, repo_root)
    else:
        log.warning("No remote '%s' for the main project; skipping pull", remote)
        console.print(f"[yellow]Warning: no remote '{remote}' configured for main project. Skipping pull.[/yellow]")

    for project, _ in project_checkouts(projects, Path(".")):
        repo = project.repo_path
        if not runner.dry_run and not remote_exists(runner, project.remote, repo):
            log.warning("No remote '%s' for project %s; skipping pull", project.remote, project.name)
            console.print(
                f"[yellow]Warning: no remote '{project.remote}' configured for project "
                f"'{project.name}'. Skipping pull.[/yellow]"
            )
            continue
        project_trunk = project_trunk_branch(runner, project)
        console.print(f"[dim]Pulling latest changes for {project.name} from {project.remote}/{project_trunk}...[/dim]")
        try:
            pull_latest_changes(runner, project.remote, project_trunk, repo)
        except WorktrackError as e:
            raise WorktrackError(f"failed to pull changes for project {project.name}: {e}") from e


def prevalidate_worktrees(
    runner: CommandRunner,
    paths: List[Path],
    work_item_id: str,
    override: bool,
) -> None:
    """Check every target path before anything is created.

    Raises:
        PreconditionError: Listing all occupied paths when ``override`` is off
    """
    if runner.dry_run:
        return
    conflicts = [p for p in paths if check_worktree_exists(p, work_item_id) != WorktreeState.NOT_EXISTS]
    if not conflicts:
        return
    if not override:
        raise PreconditionError(
            f"worktree path(s) already exist: {', '.join(str(p) for p in conflicts)}. "
            "Use --override to remove them and create new ones"
        )
    for path in conflicts:
        handle_existing_worktree(runner, path, work_item_id, override=True)


def prevalidate_branches(
    runner: CommandRunner,
    checkouts: List[Tuple[str, str, str]],
    branch: str,
    reuse_branch: bool,
) -> Set[str]:
    """Check the work item branch in every repository before creating anything.

    Args:
        checkouts: (label, repository path, trunk branch) per repository

    Returns:
        Repository paths where the branch exists and can be reused

    Raises:
        PreconditionError: If the branch has commits anywhere, or points to
            trunk somewhere and ``reuse_branch`` is off
    """
    if runner.dry_run:
        return set()
    with_commits: List[str] = []
    points_to_trunk: List[str] = []
    reusable: Set[str] = set()
    for label, repo, trunk in checkouts:
        state = check_branch_state(runner, branch, trunk, repo)
        if state == BranchState.HAS_COMMITS:
            with_commits.append(label)
        elif state == BranchState.POINTS_TO_TRUNK:
            points_to_trunk.append(label)
            reusable.add(str(repo))

    if with_commits:
        raise PreconditionError(
            f"branch {branch} already exists and has commits in: {', '.join(with_commits)}. "
            "Delete those branches first to start fresh, or use a different work item"
        )
    if points_to_trunk and not reuse_branch:
        raise PreconditionError(
            f"branch {branch} already exists and points to trunk in: {', '.join(points_to_trunk)}. "
            "Use --reuse-branch to check them out, or delete the branches first"
        )
    return reusable


def create_polyrepo_worktrees(
    runner: CommandRunner,
    projects: List[PolyrepoProject],
    repo_root: Path,
    trunk_branch: str,
    base_path: Path,
    branch: str,
    work_item_id: str,
    override: bool,
    reuse_branch: bool,
) -> Path:
    """Create the main and project worktrees for a polyrepo work item.

    All paths and branches are validated up front. Worktrees are then
    created detached (phase 1) and the branch is attached in each (phase 2);
    a failure in either phase removes everything created so far.

    Returns:
        Path of the main project worktree
    """
    validate_polyrepo_projects(projects, runner.dry_run)

    main_path = base_path / MAIN_MOUNT
    checkouts = project_checkouts(projects, base_path)

    prevalidate_worktrees(runner, [main_path] + [p for _, p in checkouts], work_item_id, override)

    trunks = {project.name: project_trunk_branch(runner, project) for project, _ in checkouts}
    reusable = prevalidate_branches(
        runner,
        [("main project", str(repo_root), trunk_branch)]
        + [(project.name, project.repo_path, trunks[project.name]) for project, _ in checkouts],
        branch,
        reuse_branch,
    )

    if not runner.dry_run:
        base_path.mkdir(parents=True, exist_ok=True)

    created: List[Tuple[Path, Path]] = []
    try:
        console.print(f"[dim]Creating main project worktree at {main_path}...[/dim]")
        create_detached_worktree(runner, repo_root, main_path, trunk_branch)
        created.append((main_path, repo_root))

        for project, worktree_path in checkouts:
            console.print(f"[dim]Creating worktree for {project.name} at {worktree_path}...[/dim]")
            create_detached_worktree(runner, project.repo_path, worktree_path, trunks[project.name])
            created.append((worktree_path, Path(project.repo_path)))

        for worktree_path, repo in created:
            checkout_branch_in_worktree(runner, branch, worktree_path, str(repo) in reusable)
    except WorktrackError:
        rollback_worktrees(runner, created)
        raise

    return main_path
