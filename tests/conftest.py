"""Pytest configuration and fixtures for worktrack tests.

Every test runs with an isolated global git config and without a GitHub
token, so nothing reads the developer's settings or reaches the network.
"""

from pathlib import Path

import pytest
from click.testing import CliRunner

from tests.helpers import commit_all, init_repo, write_config, write_work_item


@pytest.fixture(autouse=True)
def isolated_git_config(tmp_path_factory, monkeypatch):
    """Point git at a throwaway global config with an identity set."""
    config_dir = tmp_path_factory.mktemp("gitconfig")
    global_config = config_dir / "gitconfig"
    global_config.write_text(
        "[user]\n"
        "\tname = Test User\n"
        "\temail = test@example.com\n"
        "[commit]\n"
        "\tgpgsign = false\n"
        "[init]\n"
        "\tdefaultBranch = main\n"
    )
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.delenv("WORKTRACK_GITHUB_TOKEN", raising=False)


@pytest.fixture
def cli_runner():
    """Create a Click test runner."""
    return CliRunner()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A real repository on ``main`` with one commit."""
    return init_repo(tmp_path / "project")


@pytest.fixture
def project_repo(git_repo: Path) -> Path:
    """Repository with a worktrack.yml and work item 014 in todo, committed."""
    write_config(git_repo, {"start": {"status_action": "commit_only"}})
    write_work_item(git_repo, "014", "Add login page", status="todo", folder="1_todo")
    commit_all(git_repo)
    return git_repo
