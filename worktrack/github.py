"""Pull request integration for ``worktrack done``.

The remote host is reached through a PullRequestProvider. GitHubProvider
talks to github.com (or a self-hosted instance) with PyGithub; tests use an
in-memory provider instead.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from github import Auth, Github, GithubException, UnknownObjectException

from worktrack.errors import ExternalError, ValidationError

log = logging.getLogger("worktrack.github")

TOKEN_ENV_VAR = "WORKTRACK_GITHUB_TOKEN"
GITHUB_HOST = "github.com"
API_TIMEOUT = 60

_FAILING_STATES = ("failure", "error")


@dataclass
class PullRequest:
    """Pull request information, fetched fresh on every invocation."""

    number: int
    title: str
    head_ref: str
    head_sha: str = ""
    state: str = "open"
    merged: bool = False
    # None means the host has not computed mergeability yet
    mergeable: Optional[bool] = None
    merged_at: str = ""
    merge_commit_sha: str = ""
    created_at: str = ""

    @property
    def is_closed_or_merged(self) -> bool:
        return self.merged or self.state == "closed" or bool(self.merged_at)


@dataclass
class CheckStatus:
    """One commit status reported by CI."""

    context: str
    state: str  # success, failure, error, pending


@dataclass
class CombinedStatus:
    """Aggregate commit status for a SHA."""

    state: str
    statuses: List[CheckStatus] = field(default_factory=list)

    @property
    def failing(self) -> List[CheckStatus]:
        return [s for s in self.statuses if s.state in _FAILING_STATES]


@dataclass
class CheckResult:
    """Outcome of the readiness checks.

    ``overridden`` lists every failure that ``--force`` let through.
    """

    passed: bool = True
    overridden: List[str] = field(default_factory=list)


class PullRequestProvider(ABC):
    """The operations ``done`` needs from a pull request host."""

    @abstractmethod
    def list_pull_requests(self) -> List[PullRequest]:
        """All pull requests of the repository, in any state."""

    @abstractmethod
    def get_mergeable(self, number: int) -> Optional[bool]:
        """Whether a pull request can be merged; None while the host is still computing it."""

    @abstractmethod
    def get_combined_status(self, sha: str) -> CombinedStatus:
        pass

    @abstractmethod
    def list_review_comments(self, number: int) -> List[str]:
        """Bodies of the review comments on a pull request."""

    @abstractmethod
    def merge(self, number: int, commit_message: str, merge_method: str) -> str:
        """Merge a pull request and return the merge commit SHA."""

    @abstractmethod
    def delete_ref(self, ref: str) -> None:
        """Delete a git ref such as ``heads/<branch>``.

        Raises:
            RefNotFoundError: If the ref does not exist
        """


class RefNotFoundError(ExternalError):
    """The ref to delete is already gone."""

    pass


def _timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class GitHubProvider(PullRequestProvider):
    """PullRequestProvider backed by the GitHub REST API.

    Args:
        token: API token; never logged
        owner: Repository owner
        repo: Repository name
        base_url: Web URL of a self-hosted instance, empty for github.com
    """

    def __init__(self, token: str, owner: str, repo: str, base_url: str = ""):
        self.owner = owner
        self.repo_name = repo
        if base_url:
            api_url = base_url.rstrip("/") + "/api/v3"
            log.debug("Using GitHub API at %s", api_url)
            self.github = Github(auth=Auth.Token(token), base_url=api_url, timeout=API_TIMEOUT)
        else:
            self.github = Github(auth=Auth.Token(token), timeout=API_TIMEOUT)
        self._repo = None

    @property
    def repo(self):
        if self._repo is None:
            try:
                self._repo = self.github.get_repo(f"{self.owner}/{self.repo_name}")
            except GithubException as e:
                raise ExternalError(
                    f"failed to access repository {self.owner}/{self.repo_name}: {_describe(e)}"
                ) from e
        return self._repo

    def list_pull_requests(self) -> List[PullRequest]:
        # mergeable is not in the list payload; reading it would fetch each PR
        try:
            pulls = list(self.repo.get_pulls(state="all", sort="created", direction="desc"))
        except GithubException as e:
            raise ExternalError(f"failed to list pull requests: {_describe(e)}") from e

        return [
            PullRequest(
                number=pr.number,
                title=pr.title or "",
                head_ref=pr.head.ref,
                head_sha=pr.head.sha or "",
                state=pr.state,
                merged=bool(pr.merged_at),
                merged_at=_timestamp(pr.merged_at),
                merge_commit_sha=(pr.merge_commit_sha or "") if pr.merged_at else "",
                created_at=_timestamp(pr.created_at),
            )
            for pr in pulls
        ]

    def get_mergeable(self, number: int) -> Optional[bool]:
        try:
            return self.repo.get_pull(number).mergeable
        except GithubException as e:
            raise ExternalError(f"failed to get pull request #{number}: {_describe(e)}") from e

    def get_combined_status(self, sha: str) -> CombinedStatus:
        try:
            combined = self.repo.get_commit(sha).get_combined_status()
        except GithubException as e:
            raise ExternalError(f"failed to get status checks for {sha[:12]}: {_describe(e)}") from e
        return CombinedStatus(
            state=combined.state,
            statuses=[CheckStatus(context=s.context, state=s.state) for s in combined.statuses],
        )

    def list_review_comments(self, number: int) -> List[str]:
        try:
            return [c.body for c in self.repo.get_pull(number).get_review_comments()]
        except GithubException as e:
            raise ExternalError(f"failed to list review comments for PR #{number}: {_describe(e)}") from e

    def merge(self, number: int, commit_message: str, merge_method: str) -> str:
        try:
            status = self.repo.get_pull(number).merge(
                commit_message=commit_message,
                merge_method=merge_method,
            )
        except GithubException as e:
            raise ExternalError(f"merge failed for PR #{number}: {_describe(e)}") from e
        if not status.merged:
            raise ExternalError(f"merge failed for PR #{number}: {status.message}")
        return status.sha or ""

    def delete_ref(self, ref: str) -> None:
        try:
            self.repo.get_git_ref(ref).delete()
        except UnknownObjectException as e:
            raise RefNotFoundError(f"ref {ref} not found") from e
        except GithubException as e:
            if e.status == 422 and "reference does not exist" in _describe(e).lower():
                raise RefNotFoundError(f"ref {ref} not found") from e
            raise ExternalError(f"failed to delete {ref}: {_describe(e)}") from e


def _describe(e: GithubException) -> str:
    data = e.data if isinstance(e.data, dict) else {}
    message = data.get("message") or str(e)
    return f"{message} (HTTP {e.status})"


def get_token() -> str:
    return os.environ.get(TOKEN_ENV_VAR, "")


def parse_owner_repo(remote_url: str) -> Tuple[str, str]:
    """Owner and repository name from a remote URL.

    Accepts ``git@host:owner/repo(.git)`` and ``https://host/owner/repo(.git)``.

    Raises:
        ValidationError: If the URL has no owner/repo path

    Example:
        >>> parse_owner_repo("git@github.com:acme/widgets.git")
        ('acme', 'widgets')
    """
    if remote_url.startswith("git@"):
        _, sep, path = remote_url[len("git@"):].partition(":")
        if not sep:
            raise ValidationError(f"invalid git SSH URL: {remote_url}")
    else:
        parsed = urlparse(remote_url)
        if "://" in remote_url and not parsed.netloc:
            raise ValidationError(f"invalid URL: missing host in {remote_url}")
        path = parsed.path

    path = path.strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    segments = path.split("/")
    if len(segments) < 2 or not segments[0] or not segments[1]:
        raise ValidationError(f"invalid GitHub repository path in remote URL: {remote_url}")
    return segments[0], segments[1]


def remote_host(remote_url: str) -> str:
    if remote_url.startswith("git@"):
        host, sep, _ = remote_url[len("git@"):].partition(":")
        return host if sep else ""
    return urlparse(remote_url).hostname or ""


def is_github_remote(remote_url: str, base_url: str = "") -> bool:
    """True if the remote is github.com or the configured self-hosted host."""
    if not remote_url:
        return False
    host = remote_host(remote_url)
    if not host:
        return False
    if host == GITHUB_HOST:
        return True
    if base_url:
        return urlparse(base_url).hostname == host
    return False


def find_pull_request_for_work_item(provider: PullRequestProvider, work_item_id: str) -> Optional[PullRequest]:
    """Pull request whose head branch belongs to the work item.

    A head ref matches when it is the ID itself or starts with ``<id>-``.
    Open pull requests win over closed ones; among equals the newest wins.
    Mergeability is fetched only for the chosen pull request, and only if
    it is still open.
    """
    matches = [
        pr
        for pr in provider.list_pull_requests()
        if pr.head_ref == work_item_id or pr.head_ref.startswith(f"{work_item_id}-")
    ]
    if not matches:
        return None
    matches.sort(key=lambda pr: (pr.state == "open", pr.created_at, pr.number), reverse=True)
    pr = matches[0]
    if not pr.is_closed_or_merged:
        pr.mergeable = provider.get_mergeable(pr.number)
    return pr


def run_pr_checks(
    provider: PullRequestProvider,
    pr: PullRequest,
    require_checks: bool,
    require_no_comments: bool,
    force: bool,
) -> CheckResult:
    """Evaluate whether a pull request may be merged.

    Every check is evaluated even with ``force``; failures it lets through
    are recorded in the result and logged.

    Raises:
        ExternalError: On the first failing check when ``force`` is off
    """
    if not pr.head_sha:
        raise ExternalError(f"pull request #{pr.number} has no head SHA")

    result = CheckResult()

    def fail(message: str) -> None:
        if not force:
            raise ExternalError(message, override="--force")
        log.warning("Overriding failed check (--force): %s", message)
        result.overridden.append(message)

    if pr.mergeable is False:
        fail(f"pull request #{pr.number} is not mergeable")
    elif pr.mergeable is None and require_checks:
        status = provider.get_combined_status(pr.head_sha)
        log.debug("Combined status for #%d: %s", pr.number, status.state)
        if status.state == "failure" or status.state == "error":
            fail(
                f"required status checks have not passed for PR #{pr.number} "
                f"(state: {status.state})"
            )
        elif status.state == "pending" and status.failing:
            names = ", ".join(s.context for s in status.failing)
            fail(f"status check(s) failing for PR #{pr.number} while others are pending: {names}")
        elif status.state not in ("success", "pending"):
            fail(f"required status checks have not passed for PR #{pr.number} (state: {status.state})")

    if require_no_comments:
        comments = provider.list_review_comments(pr.number)
        if comments:
            fail(
                f"pull request #{pr.number} has {len(comments)} review comment(s): "
                "resolve all threads first"
            )

    return result


def build_done_commit_message(template: str, work_item_id: str, title: str) -> str:
    """Fill ``{id}`` and ``{title}`` in a merge commit template."""
    return template.replace("{id}", work_item_id).replace("{title}", title)


def merge_pull_request(
    provider: PullRequestProvider,
    pr: Optional[PullRequest],
    merge_strategy: str,
    commit_message: str,
) -> str:
    """Merge ``pr`` and return the merge commit SHA.

    Raises:
        ValueError: If ``pr`` is None
    """
    if pr is None:
        raise ValueError("merge_pull_request requires a pull request")
    log.info("Merging PR #%d with strategy %s", pr.number, merge_strategy)
    return provider.merge(pr.number, commit_message, merge_strategy)


def delete_branch(provider: PullRequestProvider, branch: str) -> bool:
    """Delete a remote branch. An already deleted branch is not an error.

    Returns:
        True if the branch was deleted, False if it was already gone
    """
    try:
        provider.delete_ref(f"heads/{branch}")
    except RefNotFoundError:
        log.debug("Remote branch %s already deleted", branch)
        return False
    return True
