"""Work item lookup, naming and status moves.

Work items are markdown files under ``<work_folder>/<status folder>/``. The
folder a file sits in is its status; moving status renames the file into
another folder and rewrites its ``status`` field.
"""

import hashlib
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from rich.console import Console

from worktrack.config import Config
from worktrack.errors import PreconditionError, ValidationError, WorktrackError
from worktrack.frontmatter import WorkItemDocument, WorkItemMeta, utc_now

log = logging.getLogger("worktrack.workitems")
console = Console()

UNKNOWN = "unknown"
MAX_SLUG_LENGTH = 100


@dataclass
class WorkItem:
    """A work item file and its parsed metadata."""

    path: Path
    meta: WorkItemMeta
    status: str

    @property
    def id(self) -> str:
        return self.meta.id

    @property
    def title(self) -> str:
        return self.meta.title or ""

    @property
    def kind(self) -> str:
        return self.meta.kind or UNKNOWN


def validate_work_item_id(work_item_id: str, config: Config) -> None:
    """Reject IDs that could escape the work folder or do not match id_format.

    Raises:
        ValidationError: If the ID is invalid
    """
    id_format = config.validation.id_format
    if (
        not work_item_id
        or ".." in work_item_id
        or "/" in work_item_id
        or "\\" in work_item_id
        or not re.search(id_format, work_item_id)
    ):
        raise ValidationError(
            f"invalid work item ID '{work_item_id}': expected format {id_format}"
        )


def kebab_case(text: str) -> str:
    """Lowercase ``text`` and join its words with hyphens.

    Example:
        >>> kebab_case("Fix the Login_page!")
        'fix-the-login-page'
    """
    slug = text.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-{2,}", "-", slug)
    return slug.strip("-")


def sanitize_title(title: Optional[str], work_item_id: str) -> str:
    """Turn a work item title into the slug used for branch and directory names.

    A missing title (or the literal ``unknown``) gives an empty slug, meaning
    the name is just the ID. Slugs over 100 characters are cut short and get a
    6-character hash suffix so distinct long titles stay distinct.

    Raises:
        ValidationError: If a non-empty title has no usable characters
    """
    if not title or title == UNKNOWN:
        log.warning("Work item %s has no title; using the ID alone", work_item_id)
        console.print(
            f"[yellow]Warning: work item {work_item_id} has no title. "
            f"Using '{work_item_id}' for the worktree directory and branch name.[/yellow]"
        )
        return ""

    slug = kebab_case(title)
    if not slug:
        raise ValidationError(
            f"work item '{work_item_id}' title sanitization resulted in an empty string: "
            "update the title to include letters or digits"
        )

    if len(slug) > MAX_SLUG_LENGTH:
        suffix = "-" + hashlib.sha256(slug.encode()).hexdigest()[:6]
        slug = slug[: MAX_SLUG_LENGTH - len(suffix)].rstrip("-") + suffix

    return slug


def branch_name_for(work_item_id: str, slug: str) -> str:
    """Branch (and worktree directory) name: ``{id}-{slug}``, or the ID alone."""
    return f"{work_item_id}-{slug}" if slug else work_item_id


def find_work_item_file(work_item_id: str, config: Config) -> Path:
    """Find the file whose front matter ``id`` equals ``work_item_id``.

    Raises:
        PreconditionError: If the work folder is missing or no file matches
    """
    work_folder = config.work_folder_path
    if not work_folder.is_dir():
        raise PreconditionError(
            f"work folder {work_folder} not found: run worktrack from the project root"
        )

    for path in sorted(work_folder.rglob("*.md")):
        if "template" in path.name.lower() or not path.is_file():
            continue
        try:
            doc = WorkItemDocument.load(path)
        except (OSError, ValidationError) as e:
            log.debug("Skipping unreadable work item %s: %s", path, e)
            continue
        if doc.meta.id == work_item_id:
            return path

    raise PreconditionError(f"work item {work_item_id} not found in {work_folder}")


def status_from_path(path: Path, config: Config) -> str:
    """Status name of the folder a work item file lives in.

    Raises:
        ValidationError: If the parent folder is not a configured status folder
    """
    status = config.status_for_folder(path.parent.name)
    if status is None:
        raise ValidationError(
            f"work item {path} is not inside a configured status folder"
        )
    return status


def load_work_item(work_item_id: str, config: Config) -> WorkItem:
    """Find and parse a work item by ID."""
    path = find_work_item_file(work_item_id, config)
    doc = WorkItemDocument.load(path)
    return WorkItem(path=path, meta=doc.meta, status=status_from_path(path, config))


def target_path_for(path: Path, target_status: str, config: Config) -> Path:
    """Where ``path`` lands when moved to ``target_status``.

    Raises:
        ValidationError: If ``target_status`` is not a configured status
    """
    folder = config.status_folder(target_status)
    if folder is None:
        raise ValidationError(
            f"invalid target status '{target_status}': configured statuses are "
            f"{', '.join(config.status_folders)}"
        )
    return config.work_folder_path / folder / path.name


def move_work_item_without_commit(
    config: Config,
    work_item_id: str,
    target_status: str,
    dry_run: bool = False,
) -> Tuple[Path, Path]:
    """Move a work item into the target status folder and set its status.

    The file is renamed first (so it is never present in two folders) and then
    rewritten in place. If the rewrite fails the rename is undone.

    Returns:
        Tuple of (old path, new path)

    Raises:
        ValidationError: If the target status is not configured
        WorktrackError: If the move fails; the original file is left in place
    """
    old_path = find_work_item_file(work_item_id, config)
    new_path = target_path_for(old_path, target_status, config)

    if dry_run:
        console.print(
            f"[DRY RUN] move {old_path} -> {new_path} (status: {target_status})",
            markup=False,
            highlight=False,
        )
        return old_path, new_path

    if new_path.exists() and new_path != old_path:
        raise PreconditionError(f"cannot move work item {work_item_id}: {new_path} already exists")

    doc = WorkItemDocument.load(old_path)
    doc.meta.status = target_status
    doc.meta.updated = utc_now()

    new_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.rename(old_path, new_path)
    except OSError as e:
        raise WorktrackError(f"failed to move work item {work_item_id}: {e}") from e

    try:
        doc.save(new_path)
    except OSError as e:
        os.rename(new_path, old_path)
        raise WorktrackError(f"failed to update status of work item {work_item_id}: {e}") from e

    log.info("Moved work item %s to %s", work_item_id, target_status)
    return old_path, new_path


def update_work_item_done_metadata(
    path: Path,
    merged_at: str,
    merge_commit_sha: str,
    pr_number: int,
    merge_strategy: str,
) -> WorkItemMeta:
    """Record how a work item's PR was merged.

    Only the four merge fields and ``updated`` change; other fields and the
    body are written back as they were.
    """
    doc = WorkItemDocument.load(path)
    doc.meta.merged_at = merged_at
    doc.meta.merge_commit_sha = merge_commit_sha
    doc.meta.pr_number = pr_number
    doc.meta.merge_strategy = merge_strategy
    doc.meta.updated = utc_now()
    doc.save(path)
    return doc.meta
