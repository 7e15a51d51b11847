"""Helpers for building git repositories and work items in tests."""

import subprocess
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from worktrack.github import CombinedStatus, PullRequest, PullRequestProvider, RefNotFoundError


def git(repo: Path, *args: str) -> str:
    """Run git in ``repo`` and return stripped stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def init_repo(path: Path, branch: str = "main") -> Path:
    """Create a git repository with one commit on ``branch``."""
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "--quiet")
    git(path, "symbolic-ref", "HEAD", f"refs/heads/{branch}")
    (path / "README.md").write_text("# Test Project\n")
    git(path, "add", ".")
    git(path, "commit", "--quiet", "-m", "Initial commit")
    return path


def add_bare_remote(repo: Path, remote_path: Path, name: str = "origin") -> Path:
    """Create a bare repository, add it as ``name`` and push the current branch."""
    subprocess.run(["git", "init", "--bare", "--quiet", str(remote_path)], check=True, capture_output=True)
    git(repo, "remote", "add", name, str(remote_path))
    git(repo, "push", "--quiet", name, git(repo, "rev-parse", "--abbrev-ref", "HEAD"))
    return remote_path


def work_item_content(
    work_item_id: str,
    title: Optional[str],
    status: str,
    kind: str = "task",
    extra: Optional[Dict] = None,
    body: str = "\n# Details\n\nSome body text.\n",
) -> str:
    data: Dict = {"id": work_item_id}
    if title is not None:
        data["title"] = title
    data["status"] = status
    data["kind"] = kind
    data["created"] = "2024-05-01"
    data.update(extra or {})
    return "---\n" + yaml.safe_dump(data, sort_keys=False) + "---\n" + body


def write_work_item(
    repo: Path,
    work_item_id: str,
    title: Optional[str] = "Add login page",
    status: str = "todo",
    folder: str = "1_todo",
    filename: Optional[str] = None,
    **kwargs,
) -> Path:
    """Write a work item file under ``.work/<folder>/``."""
    directory = repo / ".work" / folder
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / (filename or f"{work_item_id}-item.md")
    path.write_text(work_item_content(work_item_id, title, status, **kwargs))
    return path


def write_config(repo: Path, data: Dict) -> Path:
    path = repo / "worktrack.yml"
    path.write_text(yaml.safe_dump(data, sort_keys=False))
    return path


def commit_all(repo: Path, message: str = "Add work items") -> None:
    git(repo, "add", "-A")
    git(repo, "commit", "--quiet", "-m", message)


def branches(repo: Path) -> List[str]:
    return git(repo, "for-each-ref", "--format=%(refname:short)", "refs/heads").splitlines()


def commit_count(repo: Path, ref: str = "HEAD") -> int:
    return int(git(repo, "rev-list", "--count", ref))


class FakeProvider(PullRequestProvider):
    """In-memory pull request host that records every call."""

    def __init__(
        self,
        pulls: Optional[List[PullRequest]] = None,
        status: Optional[CombinedStatus] = None,
        comments: Optional[Dict[int, List[str]]] = None,
        refs: Optional[List[str]] = None,
        merge_sha: str = "abc123def456",
    ):
        self.pulls = pulls or []
        self.status = status or CombinedStatus(state="success")
        self.comments = comments or {}
        self.refs = set(refs or [])
        self.merge_sha = merge_sha
        self.calls: List[tuple] = []

    def list_pull_requests(self) -> List[PullRequest]:
        self.calls.append(("list_pull_requests",))
        return list(self.pulls)

    def get_mergeable(self, number: int) -> Optional[bool]:
        self.calls.append(("get_mergeable", number))
        for pr in self.pulls:
            if pr.number == number:
                return pr.mergeable
        return None

    def get_combined_status(self, sha: str) -> CombinedStatus:
        self.calls.append(("get_combined_status", sha))
        return self.status

    def list_review_comments(self, number: int) -> List[str]:
        self.calls.append(("list_review_comments", number))
        return list(self.comments.get(number, []))

    def merge(self, number: int, commit_message: str, merge_method: str) -> str:
        self.calls.append(("merge", number, commit_message, merge_method))
        return self.merge_sha

    def delete_ref(self, ref: str) -> None:
        self.calls.append(("delete_ref", ref))
        if ref not in self.refs:
            raise RefNotFoundError(f"ref {ref} not found")
        self.refs.discard(ref)

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]
