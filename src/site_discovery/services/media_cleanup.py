"""Removes media references to pages that no longer exist."""

from typing import Iterable, List, Protocol

from loguru import logger

from site_discovery.api_client import RepositoryClient
from site_discovery.config import DiscoveryConfig
from site_discovery.schemas.sheet import build_single_sheet, parse_sheet
from site_discovery.services.exceptions import PersistenceError, RepositoryAPIError


class MediaCleanup(Protocol):
    async def cleanup_media_for_deleted_documents(self, paths: List[str]) -> int:
        """Drop media usage for deleted pages, returns the number of entries touched."""
        ...


class NullMediaCleanup:
    """Cleanup that only records what it was asked to do."""

    def __init__(self):
        self.calls: List[List[str]] = []

    async def cleanup_media_for_deleted_documents(self, paths: List[str]) -> int:
        self.calls.append(list(paths))
        logger.debug(f"No media cleanup configured, skipping {len(paths)} paths")
        return 0


def _split_used_in(value) -> List[str]:
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return []


class MediaIndexCleanup:
    """Prunes the media index written by the media scanner.

    Media used only by deleted pages is removed. Media also used elsewhere
    keeps its entry with the deleted pages dropped from usedIn and
    occurrences.
    """

    def __init__(self, client: RepositoryClient, config: DiscoveryConfig):
        self.client = client
        self.config = config

    async def cleanup_media_for_deleted_documents(self, paths: Iterable[str]) -> int:
        deleted = set(paths)
        if not deleted:
            return 0

        path = self.config.media_index_file
        try:
            rows = parse_sheet(await self.client.get_json(path))
        except RepositoryAPIError as e:
            raise PersistenceError(f"Failed to read media index: {e}") from e

        if not rows:
            logger.debug("Media index is empty, nothing to clean up")
            return 0

        kept = []
        touched = 0
        for row in rows:
            if not isinstance(row, dict):
                kept.append(row)
                continue

            used_in = _split_used_in(row.get("usedIn"))
            occurrences = row.get("occurrences") or []
            remaining_used = [p for p in used_in if p not in deleted]
            remaining_occurrences = [
                o for o in occurrences if not (isinstance(o, dict) and o.get("pagePath") in deleted)
            ]

            if len(remaining_used) == len(used_in) and len(remaining_occurrences) == len(occurrences):
                kept.append(row)
                continue

            touched += 1
            if not remaining_used and not remaining_occurrences:
                logger.debug(f"Removing media {row.get('url', row.get('name'))}: no remaining pages")
                continue

            row = dict(row)
            if isinstance(row.get("usedIn"), list):
                row["usedIn"] = remaining_used
            elif "usedIn" in row:
                row["usedIn"] = ",".join(remaining_used)
            if "occurrences" in row:
                row["occurrences"] = remaining_occurrences
            kept.append(row)

        if touched:
            try:
                await self.client.save_json(path, build_single_sheet(kept))
            except RepositoryAPIError as e:
                raise PersistenceError(f"Failed to write media index: {e}") from e
            logger.info(f"Media cleanup updated {touched} entries for {len(deleted)} deleted pages")
        return touched
