"""Front matter for work item files.

A work item is a markdown file that starts with a YAML block between ``---``
lines. The recognized keys are held in a typed record; every other key is
kept in an ordered ``extra`` mapping so it round-trips unchanged.

Dates and timestamps are left as the strings written in the file, and ``id``
is always read as its raw text, so ``017`` never turns into a number.
"""

import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from worktrack.errors import ValidationError

_TIMESTAMP_TAG = "tag:yaml.org,2002:timestamp"


class _Loader(yaml.SafeLoader):
    """SafeLoader that leaves timestamps as strings."""


class _Dumper(yaml.SafeDumper):
    """SafeDumper that writes timestamp-looking strings unquoted."""


for _cls in (_Loader, _Dumper):
    _cls.yaml_implicit_resolvers = {
        key: [(tag, regexp) for tag, regexp in resolvers if tag != _TIMESTAMP_TAG]
        for key, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
    }

_ID_LINE = re.compile(r"^id:\s*(.*?)\s*$", re.MULTILINE)

CORE_FIELDS = ("id", "title", "status", "kind", "created", "updated")
MERGE_FIELDS = ("merged_at", "merge_commit_sha", "pr_number", "merge_strategy")


def utc_now() -> str:
    """Current UTC time as ``YYYY-MM-DDTHH:MM:SSZ``.

    Example:
        >>> utc_now()
        '2026-01-04T10:30:00Z'
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def split_frontmatter(content: str) -> Tuple[Optional[str], str]:
    """Split raw content into (YAML text, body).

    The body is returned byte for byte. Returns ``(None, content)`` when the
    file has no front matter block.
    """
    if not content.startswith("---"):
        return None, content

    lines = content.splitlines(keepends=True)
    if lines[0].rstrip("\r\n") != "---":
        return None, content

    for i in range(1, len(lines)):
        if lines[i].rstrip("\r\n") == "---":
            return "".join(lines[1:i]), "".join(lines[i + 1:])

    return None, content


def _raw_id(yaml_text: str) -> Optional[str]:
    match = _ID_LINE.search(yaml_text)
    if not match:
        return None
    raw = match.group(1)
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        raw = raw[1:-1]
    return raw


def parse_frontmatter(content: str) -> Tuple[Dict[str, Any], str]:
    """Parse front matter and body from a work item file.

    Args:
        content: Full file content

    Returns:
        Tuple of (front matter dict, body)

    Raises:
        ValidationError: If the front matter block is not a YAML mapping

    Example:
        >>> fm, body = parse_frontmatter("---\\nid: 017\\n---\\n# Body\\n")
        >>> fm["id"]
        '017'
    """
    yaml_text, body = split_frontmatter(content)
    if yaml_text is None:
        return {}, content

    try:
        data = yaml.load(yaml_text, Loader=_Loader)
    except yaml.YAMLError as e:
        raise ValidationError(f"invalid front matter: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("front matter must be a mapping")

    if "id" in data:
        data["id"] = _raw_id(yaml_text) or str(data["id"])

    return data, body


def create_frontmatter(data: Dict[str, Any]) -> str:
    """Create a front matter block with delimiters, keeping key order."""
    yaml_content = yaml.dump(
        data,
        Dumper=_Dumper,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
    )
    return f"---\n{yaml_content}---\n"


@dataclass
class WorkItemMeta:
    """Typed view of a work item's front matter."""

    id: str = ""
    title: Optional[str] = None
    status: Optional[str] = None
    kind: Optional[str] = None
    created: Optional[str] = None
    updated: Optional[str] = None
    merged_at: Optional[str] = None
    merge_commit_sha: Optional[str] = None
    pr_number: Optional[int] = None
    merge_strategy: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItemMeta":
        meta = cls()
        for key, value in data.items():
            if key in CORE_FIELDS or key in MERGE_FIELDS:
                if key == "pr_number" and value is not None:
                    try:
                        value = int(value)
                    except (TypeError, ValueError) as e:
                        raise ValidationError(f"pr_number must be an integer, got {value!r}") from e
                elif value is not None and not isinstance(value, str):
                    value = str(value)
                setattr(meta, key, value)
            else:
                meta.extra[key] = value
        return meta

    def to_dict(self) -> Dict[str, Any]:
        """Serialize in write order: core fields, extras, merge record."""
        data: Dict[str, Any] = {}
        for key in CORE_FIELDS:
            value = getattr(self, key)
            if value is not None and (key != "id" or value != ""):
                data[key] = value
        data.update(self.extra)
        for key in MERGE_FIELDS:
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass
class WorkItemDocument:
    """A parsed work item file: metadata plus untouched body."""

    meta: WorkItemMeta
    body: str

    @classmethod
    def parse(cls, content: str) -> "WorkItemDocument":
        data, body = parse_frontmatter(content)
        return cls(meta=WorkItemMeta.from_dict(data), body=body)

    @classmethod
    def load(cls, path: Path) -> "WorkItemDocument":
        return cls.parse(path.read_text())

    def render(self) -> str:
        return create_frontmatter(self.meta.to_dict()) + self.body

    def save(self, path: Path) -> None:
        write_atomic(path, self.render())


def write_atomic(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` so readers never see a partial file."""
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        mode = path.stat().st_mode & 0o777 if path.exists() else 0o644
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
