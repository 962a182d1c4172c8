"""Utility functions for site-discovery."""

import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loguru import logger

from site_discovery.config import ROOT_INVENTORY


def setup_logging(
    home: Optional[Path] = None,
    log_file: Optional[str] = None,
    level: str = "INFO",
    console: bool = True,
) -> None:  # pragma: no cover
    """
    Configure loguru sinks.

    Args:
        home: Base directory for the log file
        log_file: Log file name relative to home, omitted to skip file logging
        level: Minimum level for the stderr sink
        console: Whether to log to stderr at all
    """
    logger.remove()

    if console:
        logger.add(sys.stderr, level=level, backtrace=True, diagnose=False, colorize=True)

    if log_file:
        log_path = (home or Path.home()) / log_file
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_path),
            level="DEBUG",
            rotation="10 MB",
            retention="10 days",
            backtrace=True,
            diagnose=False,
            enqueue=True,
            encoding="utf-8",
        )


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def strip_repo_prefix(path: str, repo_prefix: str) -> str:
    """
    Convert an absolute repository path to a repository-relative one.

    Examples:
        /acme/site/a/b.html -> a/b.html
        /acme/site -> ""
        a/b.html -> a/b.html
    """
    if path == repo_prefix:
        return ""
    if path.startswith(repo_prefix + "/"):
        return path[len(repo_prefix) + 1 :]
    return path.strip("/")


def folder_name_for(folder_path: str, repo_prefix: str) -> str:
    """Name of a top-level folder, root for the repository itself."""
    relative = strip_repo_prefix(folder_path, repo_prefix)
    if not relative:
        return ROOT_INVENTORY
    return relative.rstrip("/").split("/")[-1]


def inventory_name_for_folder(folder_name: str) -> str:
    """Inventory name of a top-level folder.

    A folder named root, with any number of leading underscores, gets one
    more underscore so it never shares a file with the root inventory.
    """
    if folder_name.lstrip("_") == ROOT_INVENTORY:
        return f"_{folder_name}"
    return folder_name


def folder_name_for_inventory(inventory_name: str) -> str:
    """Folder name stored under an inventory name, reverses inventory_name_for_folder."""
    if inventory_name != ROOT_INVENTORY and inventory_name.lstrip("_") == ROOT_INVENTORY:
        return inventory_name[1:]
    return inventory_name
