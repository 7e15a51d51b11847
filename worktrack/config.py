"""Configuration management for worktrack.

Configuration lives in ``worktrack.yml`` at the project root (or
``.work/worktrack.yml``) and is loaded once per invocation. Every key is
optional; missing keys take the defaults declared on the models below.
"""

import re
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from worktrack.errors import ConfigError

CONFIG_FILENAME = "worktrack.yml"

DEFAULT_STATUS_FOLDERS: Dict[str, str] = {
    "backlog": "0_backlog",
    "todo": "1_todo",
    "doing": "2_doing",
    "review": "3_review",
    "done": "4_done",
    "archived": "z_archive",
}

STATUS_ACTIONS = ("none", "commit_only", "commit_only_branch", "commit_and_push")
MERGE_STRATEGIES = ("merge", "squash", "rebase")


class ValidationConfig(BaseModel):
    """Work item validation rules."""

    id_format: str = r"^\d{3}$"

    @field_validator("id_format")
    @classmethod
    def id_format_compiles(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid id_format regex {v!r}: {e}") from e
        return v


class CommitConfig(BaseModel):
    """Templates for commits that record a status move."""

    move_subject_template: str = "Move {type} {id} to {target_status}"
    move_body_template: str = "{title} ({current_status} -> {target_status})"


class GitConfig(BaseModel):
    """Global git settings. An empty trunk branch means auto-detect."""

    trunk_branch: str = ""
    remote: str = ""


class StartConfig(BaseModel):
    """Settings for ``worktrack start``."""

    move_to: str = "doing"
    status_action: str = "commit_and_push"
    status_commit_message: str = ""

    @field_validator("status_action")
    @classmethod
    def status_action_known(cls, v: str) -> str:
        if v and v not in STATUS_ACTIONS:
            raise ValueError(
                f"invalid status_action {v!r}: use one of {', '.join(STATUS_ACTIONS)}"
            )
        return v or "commit_and_push"


class DoneConfig(BaseModel):
    """Settings for ``worktrack done``."""

    merge_strategy: str = "rebase"
    require_checks: bool = True
    require_comments_resolved: bool = True
    cleanup_branch: bool = True
    merge_commit_message: str = "{id}: {title}"
    squash_commit_message: str = ""

    @field_validator("merge_strategy")
    @classmethod
    def merge_strategy_known(cls, v: str) -> str:
        if v and v not in MERGE_STRATEGIES:
            raise ValueError(
                f"invalid merge_strategy {v!r}: use one of {', '.join(MERGE_STRATEGIES)}"
            )
        return v or "rebase"


class IDEConfig(BaseModel):
    """Editor opened on the new worktree."""

    command: str = ""
    args: List[str] = Field(default_factory=list)


class ProjectConfig(BaseModel):
    """One project checked out as part of a workspace."""

    name: str
    path: str = ""
    mount: str = ""
    repo_root: str = ""
    kind: str = ""
    description: str = ""
    remote: str = ""
    trunk_branch: str = ""
    setup: str = ""

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("project name must not be empty")
        return v


class WorkspaceConfig(BaseModel):
    """Workspace layout: work folder, worktree root and projects."""

    work_folder: str = ".work"
    worktree_root: str = ""
    git_base_url: str = ""
    setup: str = ""
    projects: List[ProjectConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def project_names_unique(self) -> "WorkspaceConfig":
        seen = set()
        for project in self.projects:
            if project.name in seen:
                raise ValueError(f"duplicate project name {project.name!r}")
            seen.add(project.name)
        return self


class Config(BaseModel):
    """worktrack configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    status_folders: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_STATUS_FOLDERS))
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    commit: CommitConfig = Field(default_factory=CommitConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    start: StartConfig = Field(default_factory=StartConfig)
    done: DoneConfig = Field(default_factory=DoneConfig)
    ide: IDEConfig = Field(default_factory=IDEConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)

    # Directory the config file was loaded from; relative paths resolve here.
    config_dir: Path = Field(default_factory=Path.cwd, exclude=True)

    @property
    def work_folder_path(self) -> Path:
        """Absolute path of the folder holding the status folders."""
        folder = Path(self.workspace.work_folder or ".work")
        if folder.is_absolute():
            return folder
        return self.config_dir / folder

    def status_folder(self, status: str) -> Optional[str]:
        """Folder name for a status, or None if the status is not configured."""
        return self.status_folders.get(status)

    def status_for_folder(self, folder: str) -> Optional[str]:
        """Reverse lookup of ``status_folders``."""
        for status, name in self.status_folders.items():
            if name == folder:
                return status
        return None


def find_config_file(start_path: Path) -> Optional[Path]:
    """Find worktrack.yml by walking up the directory tree.

    Each directory is checked for ``worktrack.yml`` and then
    ``.work/worktrack.yml``.

    Args:
        start_path: Directory to start searching from

    Returns:
        Path to config file, or None if not found
    """
    current = start_path.resolve()

    while True:
        for candidate in (current / CONFIG_FILENAME, current / ".work" / CONFIG_FILENAME):
            if candidate.is_file():
                return candidate

        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def load_config(path: Optional[Path] = None) -> Config:
    """Load configuration from worktrack.yml.

    Args:
        path: Directory to start searching from (default: current directory)

    Returns:
        Loaded configuration, or defaults rooted at ``path`` if no file exists

    Raises:
        ConfigError: If the file is not valid YAML or fails validation
    """
    if path is None:
        path = Path.cwd()

    config_file = find_config_file(path)

    if config_file is None:
        return Config(config_dir=path.resolve())

    # A file under .work/ still describes the project one level up.
    config_dir = config_file.parent
    if config_dir.name == ".work":
        config_dir = config_dir.parent

    try:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to read {config_file}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_file} must contain a mapping at the top level")

    # YAML null sections ("git:" with nothing under it) mean "use defaults".
    data = {k: v for k, v in data.items() if v is not None and k != "config_dir"}

    try:
        return Config(**data, config_dir=config_dir)
    except PydanticValidationError as e:
        raise ConfigError(f"invalid configuration in {config_file}: {e}") from e
