"""Workspace classification and worktree-root derivation.

A workspace is ``standalone`` (no projects), ``monorepo`` (projects are
components of the primary repository) or ``polyrepo`` (projects live in
their own repositories and are checked out next to the primary one).
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Union

from worktrack.config import Config
from worktrack.errors import ValidationError

log = logging.getLogger("worktrack.workspace")

WORKTREES_SUFFIX = "_worktrees"


class WorkspaceBehavior(str, Enum):
    STANDALONE = "standalone"
    MONOREPO = "monorepo"
    POLYREPO = "polyrepo"


def is_external_git_repo(path: Union[str, Path]) -> bool:
    """True if ``path`` has its own ``.git`` (a directory, or a worktree link file)."""
    git_path = Path(os.path.normpath(str(path))) / ".git"
    return git_path.is_dir() or git_path.is_file()


def resolve_project_path(path: str, repo_root: Union[str, Path]) -> str:
    """Resolve a configured project path.

    Absolute paths pass through unchanged; relative paths are joined against
    the parent directory of the primary checkout.
    """
    if os.path.isabs(path):
        return os.path.normpath(path)
    return os.path.normpath(os.path.join(os.path.dirname(os.path.normpath(str(repo_root))), path))


def infer_workspace_behavior(config: Config, repo_root: Optional[Union[str, Path]] = None) -> WorkspaceBehavior:
    """Classify the configured workspace.

    Rules, in order: no projects is standalone; any project with a shared
    ``repo_root`` is polyrepo; any project whose path is its own git
    repository is polyrepo; anything else is a monorepo.
    """
    projects = config.workspace.projects
    if not projects:
        return WorkspaceBehavior.STANDALONE

    if any(p.repo_root for p in projects):
        return WorkspaceBehavior.POLYREPO

    for project in projects:
        if not project.path:
            continue
        path = resolve_project_path(project.path, repo_root) if repo_root else project.path
        if is_external_git_repo(path):
            return WorkspaceBehavior.POLYREPO

    return WorkspaceBehavior.MONOREPO


def validate_and_clean_path(path: str) -> str:
    """Normalize ``path`` and reject traversal hidden inside it.

    ``.`` segments, ``..`` segments and duplicate separators are collapsed;
    absolute paths stay absolute and relative paths stay relative. A leading
    ``..`` is allowed (a sibling of the project), but ``..`` anywhere else
    after cleaning is rejected.

    Raises:
        ValidationError: If the path is empty or still contains ``..`` mid-path

    Example:
        >>> validate_and_clean_path("/a/./b//c/../d")
        '/a/b/d'
    """
    if not path or not path.strip():
        raise ValidationError("invalid path: path is empty")

    clean = os.path.normpath(path)
    segments = clean.split(os.sep)
    while segments and segments[0] == "..":
        segments.pop(0)
    # Dots inside a name ("releases..old") are not traversal
    if ".." in segments:
        raise ValidationError(
            f"invalid path '{path}': path contains a traversal segment"
        )
    return clean


def _common_prefix(a: str, b: str) -> str:
    a = os.path.normpath(a)
    b = os.path.normpath(b)
    a_abs = os.path.isabs(a)
    if a_abs != os.path.isabs(b):
        return ""

    common: List[str] = []
    for x, y in zip(a.split(os.sep), b.split(os.sep)):
        if x != y:
            break
        common.append(x)

    if a_abs:
        # The first component of an absolute path is the empty string before "/".
        rest = [part for part in common[1:] if part]
        return os.sep + os.sep.join(rest)
    return os.sep.join(common)


def find_common_path_prefix(paths: Sequence[str]) -> str:
    """Longest directory shared by the parents of ``paths``.

    Zero paths give ``""``; one path gives its parent. Absolute paths that
    share nothing else still share the filesystem root.

    Example:
        >>> find_common_path_prefix(["/src/a/api", "/src/b/web"])
        '/src'
    """
    if not paths:
        return ""
    if len(paths) == 1:
        return os.path.dirname(os.path.normpath(paths[0]))

    prefix = os.path.dirname(os.path.normpath(paths[0]))
    for path in paths[1:]:
        prefix = _common_prefix(prefix, os.path.dirname(os.path.normpath(path)))
        if not prefix:
            return ""
    return prefix


def _sibling_worktrees_dir(path: str) -> str:
    path = os.path.normpath(path)
    return os.path.join(os.path.dirname(path), os.path.basename(path) + WORKTREES_SUFFIX)


def derive_worktree_root(
    config: Config,
    repo_root: Union[str, Path],
    behavior: WorkspaceBehavior,
) -> str:
    """Directory under which per-work-item worktrees are created.

    An explicit ``workspace.worktree_root`` wins (relative values resolve
    against the config directory). Polyrepo workspaces use a ``_worktrees``
    sibling of the directory shared by all project paths; everything else
    uses ``<parent>/<repo>_worktrees``.
    """
    explicit = config.workspace.worktree_root
    if explicit:
        clean = validate_and_clean_path(explicit)
        if not os.path.isabs(clean):
            clean = os.path.normpath(os.path.join(str(config.config_dir), clean))
        log.debug("Using configured worktree root %s", clean)
        return clean

    repo_root = os.path.normpath(str(repo_root))

    if behavior == WorkspaceBehavior.POLYREPO:
        paths = [
            resolve_project_path(p.path, repo_root)
            for p in config.workspace.projects
            if p.path
        ]
        if paths:
            prefix = find_common_path_prefix(paths)
            if prefix:
                return _sibling_worktrees_dir(prefix)
            first_parent = os.path.dirname(paths[0])
            return _sibling_worktrees_dir(first_parent)

    return _sibling_worktrees_dir(repo_root)
