"""Tests for trunk and remote resolution and branch lifecycle helpers."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from tests.helpers import branches, git, init_repo
from worktrack.branches import (
    BranchState,
    auto_detect_trunk_branch,
    branch_exists,
    check_branch_state,
    delete_local_branch,
    determine_trunk_branch,
    get_current_branch,
    get_repo_root,
    has_uncommitted_changes,
    pull_latest_changes,
    resolve_remote_name,
    validate_on_trunk,
)
from worktrack.config import Config, ProjectConfig
from worktrack.errors import CommandError, PreconditionError, WorktrackError
from worktrack.runner import CommandRunner


class TestResolveRemoteName:
    def test_project_override_wins(self) -> None:
        config = Config(git={"remote": "upstream"})
        assert resolve_remote_name(config, ProjectConfig(name="api", remote="fork")) == "fork"

    def test_global_remote(self) -> None:
        assert resolve_remote_name(Config(git={"remote": "upstream"})) == "upstream"

    def test_default_origin(self) -> None:
        assert resolve_remote_name(Config(), ProjectConfig(name="api")) == "origin"


class TestDetermineTrunkBranch:
    """The first non-empty source wins and later ones are never consulted."""

    @pytest.fixture
    def runner(self) -> MagicMock:
        runner = MagicMock(spec=CommandRunner)
        runner.dry_run = False
        return runner

    def test_flag_wins(self, runner: MagicMock) -> None:
        config = Config(git={"trunk_branch": "develop"})
        project = ProjectConfig(name="api", trunk_branch="release")
        assert determine_trunk_branch(runner, config, "hotfix", "/repo", project) == "hotfix"
        runner.run.assert_not_called()

    def test_project_before_global(self, runner: MagicMock) -> None:
        config = Config(git={"trunk_branch": "develop"})
        project = ProjectConfig(name="api", trunk_branch="release")
        assert determine_trunk_branch(runner, config, "", "/repo", project) == "release"
        runner.run.assert_not_called()

    def test_global_before_auto_detect(self, runner: MagicMock) -> None:
        config = Config(git={"trunk_branch": "develop"})
        assert determine_trunk_branch(runner, config, "", "/repo") == "develop"
        runner.run.assert_not_called()

    def test_auto_detect_last(self, git_repo: Path) -> None:
        assert determine_trunk_branch(CommandRunner(), Config(), "", git_repo) == "main"


class TestAutoDetectTrunkBranch:
    """Tests for main/master detection."""

    def test_main(self, git_repo: Path) -> None:
        assert auto_detect_trunk_branch(CommandRunner(), git_repo) == "main"

    def test_master(self, tmp_path: Path) -> None:
        repo = init_repo(tmp_path / "legacy", branch="master")
        assert auto_detect_trunk_branch(CommandRunner(), repo) == "master"

    def test_both_is_ambiguous(self, git_repo: Path) -> None:
        git(git_repo, "branch", "master")
        with pytest.raises(PreconditionError, match="both"):
            auto_detect_trunk_branch(CommandRunner(), git_repo)

    def test_neither(self, tmp_path: Path) -> None:
        repo = init_repo(tmp_path / "odd", branch="trunk")
        with pytest.raises(PreconditionError, match="neither"):
            auto_detect_trunk_branch(CommandRunner(), repo)

    def test_dry_run_does_not_inspect(self) -> None:
        runner = MagicMock(spec=CommandRunner)
        runner.dry_run = True
        assert auto_detect_trunk_branch(runner, "/nowhere") == "main"
        runner.run.assert_not_called()


class TestRepositoryQueries:
    def test_repo_root_and_current_branch(self, git_repo: Path) -> None:
        runner = CommandRunner()
        (git_repo / "sub").mkdir()
        assert get_repo_root(runner, git_repo / "sub").resolve() == git_repo.resolve()
        assert get_current_branch(runner, git_repo) == "main"

    def test_not_a_repository(self, tmp_path: Path) -> None:
        with pytest.raises(PreconditionError, match="not a git repository"):
            get_repo_root(CommandRunner(), tmp_path)

    def test_branch_exists(self, git_repo: Path) -> None:
        runner = CommandRunner()
        assert branch_exists(runner, "main", git_repo) is True
        assert branch_exists(runner, "nope", git_repo) is False

    def test_uncommitted_changes(self, git_repo: Path) -> None:
        runner = CommandRunner()
        assert has_uncommitted_changes(runner, git_repo) is False
        (git_repo / "new.txt").write_text("x")
        assert has_uncommitted_changes(runner, git_repo) is True

    def test_validate_on_trunk(self, git_repo: Path) -> None:
        runner = CommandRunner()
        validate_on_trunk(runner, "main", git_repo, "start")
        git(git_repo, "checkout", "-q", "-b", "feature")
        with pytest.raises(PreconditionError, match="must be run from the trunk branch 'main'"):
            validate_on_trunk(runner, "main", git_repo, "start")


class TestCheckBranchState:
    def test_states(self, git_repo: Path) -> None:
        runner = CommandRunner()
        assert check_branch_state(runner, "014-x", "main", git_repo) == BranchState.NOT_EXISTS

        git(git_repo, "branch", "014-x")
        assert check_branch_state(runner, "014-x", "main", git_repo) == BranchState.POINTS_TO_TRUNK

        git(git_repo, "checkout", "-q", "014-x")
        (git_repo / "work.txt").write_text("work")
        git(git_repo, "add", ".")
        git(git_repo, "commit", "-q", "-m", "work")
        git(git_repo, "checkout", "-q", "main")
        assert check_branch_state(runner, "014-x", "main", git_repo) == BranchState.HAS_COMMITS

    def test_dry_run_reports_missing(self, git_repo: Path) -> None:
        git(git_repo, "branch", "014-x")
        runner = CommandRunner(dry_run=True, console=MagicMock())
        assert check_branch_state(runner, "014-x", "main", git_repo) == BranchState.NOT_EXISTS


class TestDeleteLocalBranch:
    """Local branch deletion is idempotent."""

    def test_delete_then_delete_again(self, git_repo: Path) -> None:
        runner = CommandRunner()
        git(git_repo, "branch", "014-x")

        assert delete_local_branch(runner, git_repo, "014-x") is True
        assert "014-x" not in branches(git_repo)
        assert delete_local_branch(runner, git_repo, "014-x") is False

    def test_missing_branch_is_success(self, git_repo: Path) -> None:
        assert delete_local_branch(CommandRunner(), git_repo, "never-existed") is False


class TestPullLatestChanges:
    """Error messages name the specific remedy."""

    def make_runner(self, fetch_error=None, merge_error=None) -> MagicMock:
        runner = MagicMock(spec=CommandRunner)
        runner.dry_run = False

        def mutate(args, cwd=None, timeout=None):
            if args[1] == "fetch" and fetch_error:
                raise fetch_error
            if args[1] == "merge" and merge_error:
                raise merge_error
            return ""

        runner.mutate.side_effect = mutate
        return runner

    def test_success_fetches_then_merges(self) -> None:
        runner = self.make_runner()
        pull_latest_changes(runner, "origin", "main", "/repo")
        commands = [c.args[0][:2] for c in runner.mutate.call_args_list]
        assert commands == [["git", "fetch"], ["git", "merge"]]

    def test_network_error(self) -> None:
        error = CommandError(["git", "fetch"], returncode=128, stderr="fatal: Could not resolve host: github.com")
        with pytest.raises(WorktrackError, match="network error"):
            pull_latest_changes(self.make_runner(fetch_error=error), "origin", "main", "/repo")

    def test_merge_conflict_reported_on_stdout(self) -> None:
        error = CommandError(
            ["git", "merge"],
            returncode=1,
            stdout="CONFLICT (content): Merge conflict in a.txt\nAutomatic merge failed",
        )
        with pytest.raises(WorktrackError, match="merge conflicts"):
            pull_latest_changes(self.make_runner(merge_error=error), "origin", "main", "/repo")

    def test_diverged(self) -> None:
        error = CommandError(["git", "merge"], returncode=128, stderr="fatal: branches have diverged")
        with pytest.raises(WorktrackError, match="diverged"):
            pull_latest_changes(self.make_runner(merge_error=error), "origin", "main", "/repo")
