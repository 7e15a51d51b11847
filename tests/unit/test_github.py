"""Tests for pull request lookup, readiness checks and the GitHub provider."""

from unittest.mock import MagicMock, PropertyMock, patch

import pytest
from github import GithubException, UnknownObjectException

from tests.helpers import FakeProvider
from worktrack.errors import ExternalError, ValidationError
from worktrack.github import (
    CheckStatus,
    CombinedStatus,
    GitHubProvider,
    PullRequest,
    RefNotFoundError,
    build_done_commit_message,
    delete_branch,
    find_pull_request_for_work_item,
    is_github_remote,
    merge_pull_request,
    parse_owner_repo,
    run_pr_checks,
)


def make_pr(number=7, head_ref="014-add-login-page", state="open", created_at="2024-06-01T10:00:00Z", **kw):
    return PullRequest(
        number=number,
        title="Add login page",
        head_ref=head_ref,
        head_sha=kw.pop("head_sha", "f00dfeed"),
        state=state,
        created_at=created_at,
        **kw,
    )


class TestParseOwnerRepo:
    @pytest.mark.parametrize(
        "url",
        [
            "git@github.com:acme/widgets.git",
            "git@github.com:acme/widgets",
            "https://github.com/acme/widgets.git",
            "https://github.com/acme/widgets/",
            "ssh://git@github.com/acme/widgets.git",
        ],
    )
    def test_valid(self, url: str) -> None:
        assert parse_owner_repo(url) == ("acme", "widgets")

    @pytest.mark.parametrize("url", ["git@github.com", "https://github.com/acme", "https:///acme/widgets"])
    def test_invalid(self, url: str) -> None:
        with pytest.raises(ValidationError):
            parse_owner_repo(url)


class TestIsGithubRemote:
    def test_github_com(self) -> None:
        assert is_github_remote("git@github.com:acme/widgets.git")
        assert is_github_remote("https://github.com/acme/widgets")

    def test_other_hosts(self) -> None:
        assert not is_github_remote("git@gitlab.com:acme/widgets.git")
        assert not is_github_remote("/tmp/remote.git")
        assert not is_github_remote("")

    def test_self_hosted_base_url(self) -> None:
        url = "git@git.example.com:acme/widgets.git"
        assert not is_github_remote(url)
        assert is_github_remote(url, "https://git.example.com")


class TestFindPullRequestForWorkItem:
    """Head refs match the ID exactly or as an ``<id>-`` prefix."""

    def test_no_match(self) -> None:
        provider = FakeProvider(pulls=[make_pr(head_ref="0145-other"), make_pr(head_ref="feature-014")])
        assert find_pull_request_for_work_item(provider, "014") is None

    def test_exact_id_matches(self) -> None:
        provider = FakeProvider(pulls=[make_pr(number=3, head_ref="014")])
        assert find_pull_request_for_work_item(provider, "014").number == 3

    def test_open_preferred_over_newer_closed(self) -> None:
        provider = FakeProvider(
            pulls=[
                make_pr(number=9, state="closed", created_at="2024-06-05T00:00:00Z"),
                make_pr(number=4, state="open", created_at="2024-06-01T00:00:00Z"),
            ]
        )
        assert find_pull_request_for_work_item(provider, "014").number == 4

    def test_newest_among_closed(self) -> None:
        provider = FakeProvider(
            pulls=[
                make_pr(number=2, state="closed", created_at="2024-05-01T00:00:00Z"),
                make_pr(number=5, state="closed", created_at="2024-06-01T00:00:00Z"),
            ]
        )
        assert find_pull_request_for_work_item(provider, "014").number == 5
        assert provider.called("get_mergeable") == []

    def test_mergeable_fetched_for_chosen_open_pr_only(self) -> None:
        provider = FakeProvider(
            pulls=[
                make_pr(number=4, mergeable=True),
                make_pr(number=2, state="closed", created_at="2024-05-01T00:00:00Z"),
                make_pr(number=3, head_ref="020-other"),
            ]
        )
        pr = find_pull_request_for_work_item(provider, "014")

        assert pr.mergeable is True
        assert provider.called("get_mergeable") == [("get_mergeable", 4)]


class TestRunPrChecks:
    """Tests for run_pr_checks."""

    def test_mergeable_skips_status_lookup(self) -> None:
        provider = FakeProvider(status=CombinedStatus(state="failure"))
        result = run_pr_checks(provider, make_pr(mergeable=True), True, False, force=False)
        assert result.passed
        assert provider.called("get_combined_status") == []

    def test_not_mergeable(self) -> None:
        with pytest.raises(ExternalError, match="not mergeable. Use --force to proceed anyway"):
            run_pr_checks(FakeProvider(), make_pr(mergeable=False), True, False, force=False)

    def test_failed_status(self) -> None:
        provider = FakeProvider(status=CombinedStatus(state="failure"))
        with pytest.raises(ExternalError, match="status checks have not passed"):
            run_pr_checks(provider, make_pr(), True, False, force=False)

    def test_failed_status_forced(self) -> None:
        provider = FakeProvider(status=CombinedStatus(state="failure"))
        result = run_pr_checks(provider, make_pr(), True, False, force=True)
        assert len(result.overridden) == 1
        assert "failure" in result.overridden[0]

    def test_pending_with_failing_check_names_it(self) -> None:
        status = CombinedStatus(
            state="pending",
            statuses=[CheckStatus("ci/lint", "success"), CheckStatus("ci/test", "failure"), CheckStatus("ci/e2e", "pending")],
        )
        with pytest.raises(ExternalError, match="ci/test"):
            run_pr_checks(FakeProvider(status=status), make_pr(), True, False, force=False)

    def test_pending_without_failures_passes(self) -> None:
        status = CombinedStatus(state="pending", statuses=[CheckStatus("ci/e2e", "pending")])
        assert run_pr_checks(FakeProvider(status=status), make_pr(), True, False, force=False).overridden == []

    def test_checks_not_required(self) -> None:
        provider = FakeProvider(status=CombinedStatus(state="failure"))
        run_pr_checks(provider, make_pr(), False, False, force=False)
        assert provider.called("get_combined_status") == []

    def test_review_comments(self) -> None:
        provider = FakeProvider(comments={7: ["nit: rename this"]})
        with pytest.raises(ExternalError, match="1 review comment"):
            run_pr_checks(provider, make_pr(mergeable=True), True, True, force=False)

        result = run_pr_checks(provider, make_pr(mergeable=True), True, True, force=True)
        assert len(result.overridden) == 1

    def test_comments_ignored_when_not_required(self) -> None:
        provider = FakeProvider(comments={7: ["nit"]})
        run_pr_checks(provider, make_pr(mergeable=True), True, False, force=False)
        assert provider.called("list_review_comments") == []

    def test_missing_head_sha(self) -> None:
        with pytest.raises(ExternalError, match="no head SHA"):
            run_pr_checks(FakeProvider(), make_pr(head_sha=""), True, True, force=True)


class TestMergeAndDelete:
    def test_merge_requires_pull_request(self) -> None:
        with pytest.raises(ValueError):
            merge_pull_request(FakeProvider(), None, "squash", "msg")

    def test_merge_passes_strategy_and_message(self) -> None:
        provider = FakeProvider(merge_sha="deadbeef")
        assert merge_pull_request(provider, make_pr(), "squash", "014: Add login page") == "deadbeef"
        assert provider.called("merge") == [("merge", 7, "014: Add login page", "squash")]

    def test_delete_branch_is_idempotent(self) -> None:
        provider = FakeProvider(refs=["heads/014-add-login-page"])
        assert delete_branch(provider, "014-add-login-page") is True
        assert delete_branch(provider, "014-add-login-page") is False

    def test_build_done_commit_message(self) -> None:
        assert build_done_commit_message("{id}: {title} ({id})", "014", "Add login") == "014: Add login (014)"


class TestGitHubProvider:
    """GitHubProvider translates PyGithub objects and errors."""

    @pytest.fixture
    def repo(self):
        with patch("worktrack.github.Github") as github_cls:
            repo = MagicMock()
            github_cls.return_value.get_repo.return_value = repo
            yield repo

    def test_self_hosted_api_url(self) -> None:
        with patch("worktrack.github.Github") as github_cls:
            GitHubProvider("t0ken", "acme", "widgets", base_url="https://git.example.com/")
        assert github_cls.call_args.kwargs["base_url"] == "https://git.example.com/api/v3"

    def test_list_pull_requests(self, repo) -> None:
        pr = MagicMock(number=7, title="Add login page", state="closed")
        pr.head.ref = "014-add-login-page"
        pr.head.sha = "f00d"
        pr.merged_at = None
        pr.created_at = None
        # Reading mergeable on a listed PR costs one request per PR
        mergeable = PropertyMock(return_value=True)
        type(pr).mergeable = mergeable
        repo.get_pulls.return_value = [pr]

        pulls = GitHubProvider("t", "acme", "widgets").list_pull_requests()

        assert pulls[0].head_ref == "014-add-login-page"
        assert pulls[0].merged is False
        assert pulls[0].merge_commit_sha == ""
        assert pulls[0].mergeable is None
        mergeable.assert_not_called()
        repo.get_pulls.assert_called_once_with(state="all", sort="created", direction="desc")

    def test_get_mergeable(self, repo) -> None:
        repo.get_pull.return_value.mergeable = False
        assert GitHubProvider("t", "acme", "widgets").get_mergeable(7) is False
        repo.get_pull.assert_called_once_with(7)

    def test_merge_not_merged(self, repo) -> None:
        repo.get_pull.return_value.merge.return_value = MagicMock(merged=False, message="Base branch modified")
        with pytest.raises(ExternalError, match="Base branch modified"):
            GitHubProvider("t", "acme", "widgets").merge(7, "msg", "squash")

    def test_delete_missing_ref_404(self, repo) -> None:
        repo.get_git_ref.side_effect = UnknownObjectException(404, {"message": "Not Found"})
        with pytest.raises(RefNotFoundError):
            GitHubProvider("t", "acme", "widgets").delete_ref("heads/x")

    def test_delete_missing_ref_422(self, repo) -> None:
        repo.get_git_ref.return_value.delete.side_effect = GithubException(
            422, {"message": "Reference does not exist"}
        )
        with pytest.raises(RefNotFoundError):
            GitHubProvider("t", "acme", "widgets").delete_ref("heads/x")

    def test_delete_other_error(self, repo) -> None:
        repo.get_git_ref.return_value.delete.side_effect = GithubException(403, {"message": "Forbidden"})
        with pytest.raises(ExternalError, match="Forbidden") as exc_info:
            GitHubProvider("t", "acme", "widgets").delete_ref("heads/x")
        assert not isinstance(exc_info.value, RefNotFoundError)
