"""Folder scanner: walks one folder and builds or merges its inventory."""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from site_discovery.api_client import RepositoryClient
from site_discovery.config import ROOT_INVENTORY, DiscoveryConfig
from site_discovery.discovery.pool import UnitControl
from site_discovery.discovery.utils import DiscoveryReport, FolderResult
from site_discovery.ignore_utils import PartitionedItems, partition_items
from site_discovery.schemas.base import (
    DiscoveryType,
    Document,
    EntryStatus,
    RepositoryItem,
    ScanStatus,
)
from site_discovery.services.exceptions import PersistenceError, RepositoryAPIError
from site_discovery.services.persistence_service import PersistenceService
from site_discovery.utils import folder_name_for, inventory_name_for_folder, utc_now_iso


@dataclass
class WalkResult:
    """Documents found under a folder, plus the listings that failed."""

    documents: List[Document] = field(default_factory=list)
    failed_paths: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    excluded: List[str] = field(default_factory=list)


def document_from_item(item: RepositoryItem, discovered_at: str) -> Document:
    """Fresh pending record for a listed HTML file."""
    return Document(
        path=item.path,
        name=item.name,
        ext=item.ext or "html",
        last_modified=item.last_modified or 0,
        discovered_at=discovered_at,
    )


def tombstone(document: Document, deleted_at: str) -> Document:
    """Mark a record as deleted, existing tombstones keep their original time."""
    if document.is_deleted:
        return document
    return document.model_copy(
        update={
            "entry_status": EntryStatus.DELETED,
            "deleted_at": deleted_at,
            "scan_status": ScanStatus.DELETED,
            "needs_rescan": False,
        }
    )


def _is_under(path: str, prefixes: Iterable[str]) -> bool:
    return any(path == p or path.startswith(p.rstrip("/") + "/") for p in prefixes)


def merge_documents(
    previous: Sequence[Document],
    current: Sequence[Document],
    failed_paths: Sequence[str] = (),
    now: Optional[str] = None,
) -> Tuple[List[Document], DiscoveryReport]:
    """Merge the current listing of a folder into its previous inventory.

    - listed and newer than before: updated, scan state reset to pending
    - listed and not newer: unchanged, scan state kept
    - listed but not known (or known only as a tombstone): new
    - known but no longer listed: tombstoned, unless it sits under a
      listing that failed this run, in which case it is kept unchanged

    Returns:
        The merged documents (current order, then tombstones) and a report
    """
    now = now or utc_now_iso()
    report = DiscoveryReport()
    previous_by_path = {doc.path: doc for doc in previous}
    merged: List[Document] = []
    seen = set()

    for doc in current:
        if doc.path in seen:
            continue
        seen.add(doc.path)
        prior = previous_by_path.get(doc.path)

        if prior is None or prior.is_deleted:
            merged.append(doc.model_copy(update={"entry_status": EntryStatus.NEW}))
            report.new.add(doc.path)
        elif doc.last_modified > prior.last_modified:
            merged.append(
                prior.model_copy(
                    update={
                        "name": doc.name,
                        "ext": doc.ext,
                        "last_modified": doc.last_modified,
                        "discovered_at": now,
                        "discovery_complete": True,
                        "scan_status": ScanStatus.PENDING,
                        "scan_complete": False,
                        "needs_rescan": True,
                        "last_scanned_at": None,
                        "scan_attempts": 0,
                        "scan_errors": [],
                        "media_count": 0,
                        "entry_status": EntryStatus.UPDATED,
                        "deleted_at": None,
                    }
                )
            )
            report.updated.add(doc.path)
        else:
            merged.append(prior.model_copy(update={"entry_status": EntryStatus.UNCHANGED}))
            report.unchanged.add(doc.path)

    for prior in previous:
        if prior.path in seen:
            continue
        seen.add(prior.path)

        if prior.is_deleted:
            merged.append(prior)
        elif _is_under(prior.path, failed_paths):
            merged.append(prior.model_copy(update={"entry_status": EntryStatus.UNCHANGED}))
            report.unchanged.add(prior.path)
        else:
            merged.append(tombstone(prior, now))
            report.deleted.add(prior.path)

    return merged, report


class FolderScanner:
    """Walks folders depth first and keeps their inventories current."""

    def __init__(
        self,
        client: RepositoryClient,
        persistence: PersistenceService,
        config: DiscoveryConfig,
    ):
        self.client = client
        self.persistence = persistence
        self.config = config

    async def get_top_level_items(self, patterns: Sequence[str]) -> PartitionedItems:
        """List the repository root.

        Raises:
            RepositoryAPIError: If the root cannot be listed
        """
        items = await self.client.list_path(self.config.repo_prefix)
        top_level = partition_items(items, patterns)
        logger.info(
            f"Top level: {len(top_level.folders)} folders, {len(top_level.files)} files, "
            f"{len(top_level.excluded)} excluded"
        )
        return top_level

    async def walk_folder(
        self,
        folder_path: str,
        patterns: Sequence[str],
        control: Optional[UnitControl] = None,
    ) -> WalkResult:
        """Collect every HTML document below a folder.

        A failed listing is recorded and the rest of the tree is still walked.
        """
        result = WalkResult()
        discovered_at = utc_now_iso()
        stack = [folder_path]

        while stack:
            if control:
                await control.checkpoint()

            current = stack.pop()
            try:
                items = await self.client.list_path(current)
            except RepositoryAPIError as e:
                logger.warning(f"Failed to list {current}: {e}")
                result.failed_paths.append(current)
                result.errors[current] = str(e)
                continue

            listing = partition_items(items, patterns)
            result.excluded.extend(listing.excluded)
            result.documents.extend(document_from_item(f, discovered_at) for f in listing.files)
            # Reversed so subfolders are visited in listing order
            stack.extend(f.path for f in reversed(listing.folders))

        return result

    async def _persist(self, result: FolderResult) -> None:
        try:
            await self.persistence.save_inventory(result.inventory_name, result.documents)
        except PersistenceError as e:
            message = f"Failed to save inventory: {e}"
            result.error = f"{result.error}; {message}" if result.error else message

    def _build_result(
        self,
        folder_path: str,
        folder_name: str,
        discovery_type: DiscoveryType,
        walked: List[Document],
        previous: List[Document],
        failed_paths: Sequence[str] = (),
        inventory_name: str = "",
    ) -> FolderResult:
        if discovery_type == DiscoveryType.FULL:
            documents = walked
            report = DiscoveryReport(new={doc.path for doc in walked})
        else:
            documents, report = merge_documents(previous, walked, failed_paths)
        return FolderResult(
            folder_path,
            folder_name,
            documents=documents,
            report=report,
            inventory_name=inventory_name,
        )

    async def scan_folder(
        self,
        folder_path: str,
        discovery_type: DiscoveryType,
        patterns: Sequence[str],
        previous: Optional[List[Document]] = None,
        control: Optional[UnitControl] = None,
    ) -> FolderResult:
        """Walk a top-level folder and persist its inventory.

        Args:
            folder_path: Absolute folder path
            discovery_type: Full rebuilds the inventory, incremental merges into it
            patterns: Exclusion patterns
            previous: Inventory to merge against, loaded from storage when omitted
            control: Control inbox of the pool unit running this scan

        Raises:
            PersistenceError: If the previous inventory exists but cannot be read
        """
        folder_name = folder_name_for(folder_path, self.config.repo_prefix)
        walk = await self.walk_folder(folder_path, patterns, control)

        if discovery_type == DiscoveryType.INCREMENTAL and previous is None:
            previous = await self.persistence.load_inventory(
                inventory_name_for_folder(folder_name)
            )

        result = self._build_result(
            folder_path,
            folder_name,
            discovery_type,
            walk.documents,
            previous or [],
            walk.failed_paths,
        )
        result.excluded_folders = walk.excluded
        if walk.errors:
            result.error = "; ".join(f"{path}: {msg}" for path, msg in walk.errors.items())

        # Nothing was listed, keep whatever inventory exists
        if folder_path not in walk.failed_paths:
            await self._persist(result)

        report = result.report
        logger.info(
            f"Folder {folder_name}: {len(result.live_documents)} documents "
            f"(new={len(report.new)}, updated={len(report.updated)}, deleted={len(report.deleted)})"
        )
        return result

    async def process_root_files(
        self,
        files: List[RepositoryItem],
        discovery_type: DiscoveryType,
        previous: Optional[List[Document]] = None,
    ) -> FolderResult:
        """Build the inventory of documents directly in the repository root."""
        discovered_at = utc_now_iso()
        walked = [document_from_item(item, discovered_at) for item in files]

        if discovery_type == DiscoveryType.INCREMENTAL and previous is None:
            previous = await self.persistence.load_inventory(ROOT_INVENTORY)

        result = self._build_result(
            self.config.repo_prefix,
            ROOT_INVENTORY,
            discovery_type,
            walked,
            previous or [],
            inventory_name=ROOT_INVENTORY,
        )
        await self._persist(result)
        logger.info(f"Root: {len(result.live_documents)} documents")
        return result
