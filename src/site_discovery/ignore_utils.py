"""Utilities for handling exclusion patterns and repository item filtering."""

from dataclasses import dataclass, field
from typing import Iterable, List, Sequence

from loguru import logger

from site_discovery.schemas.base import RepositoryItem

# Config sheet key holding comma separated exclusion patterns
EXCLUDES_KEY = "excludes"


def _repo_prefix(path: str) -> str | None:
    """Leading /org/repo of an absolute path, None if the path is shorter."""
    parts = path.split("/")
    # "/org/repo/..." splits into ["", "org", "repo", ...]
    if len(parts) < 3 or parts[0] != "" or not parts[1] or not parts[2]:
        return None
    return f"/{parts[1]}/{parts[2]}"


def matches_exclude_patterns(path: str, patterns: Iterable[str]) -> bool:
    """Check if an absolute repository path is excluded by any pattern.

    Patterns are relative to the repository root:
    - "/drafts" excludes exactly /org/repo/drafts
    - "/drafts/*" excludes /org/repo/drafts and everything below it

    Args:
        path: Absolute path of the form /org/repo/...
        patterns: Exclusion patterns

    Returns:
        True if the path should be excluded, False otherwise
    """
    prefix = _repo_prefix(path)
    if prefix is None:
        return False

    for pattern in patterns:
        if not pattern:
            continue
        if not pattern.startswith("/"):
            pattern = "/" + pattern

        if pattern.endswith("/*"):
            base = prefix + pattern[:-2]
            if path == base or path.startswith(base + "/"):
                return True
        elif path == prefix + pattern:
            return True

    return False


def parse_exclusion_rows(rows: Sequence[dict]) -> List[str]:
    """Flatten config sheet rows into a list of exclusion patterns.

    Rows look like {"key": "excludes", "value": "/drafts/*, /tmp"}.
    """
    patterns: List[str] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        if str(row.get("key", "")).strip().lower() != EXCLUDES_KEY:
            continue
        for value in str(row.get("value", "")).split(","):
            value = value.strip()
            if value and value not in patterns:
                patterns.append(value)
    return patterns


def merge_patterns(*groups: Iterable[str]) -> List[str]:
    """Combine pattern lists, dropping duplicates while keeping order."""
    merged: List[str] = []
    for group in groups:
        for pattern in group:
            if pattern and pattern not in merged:
                merged.append(pattern)
    return merged


@dataclass
class PartitionedItems:
    """A listing split into what discovery walks and what it skips."""

    folders: List[RepositoryItem] = field(default_factory=list)
    files: List[RepositoryItem] = field(default_factory=list)
    excluded: List[str] = field(default_factory=list)


def partition_items(items: Iterable[RepositoryItem], patterns: Sequence[str]) -> PartitionedItems:
    """Split a listing into walkable folders and HTML documents.

    Hidden items (.media, .folder markers) and non-HTML files are dropped,
    excluded folders are reported by path. HTML files without a modification
    time are not yet fully written and are skipped.
    """
    result = PartitionedItems()
    for item in items:
        if item.is_hidden:
            continue

        if item.is_folder:
            if matches_exclude_patterns(item.path, patterns):
                logger.debug(f"Excluding folder {item.path}")
                result.excluded.append(item.path)
            else:
                result.folders.append(item)
            continue

        if not item.is_html:
            continue
        if item.last_modified is None:
            logger.debug(f"Skipping {item.path}: no modification time")
            continue
        if matches_exclude_patterns(item.path, patterns):
            continue
        result.files.append(item)

    return result
