"""Builds the site structure from every inventory file."""

from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from site_discovery.config import DiscoveryConfig
from site_discovery.schemas.site import (
    AggregationStats,
    ExcludedInfo,
    FileDetail,
    FileInfo,
    FolderNode,
    SiteStats,
    SiteStructure,
    SiteTree,
    ValidationResult,
)
from site_discovery.services.exceptions import PersistenceError
from site_discovery.services.persistence_service import PersistenceService
from site_discovery.utils import now_ms, strip_repo_prefix


class SiteAggregator:
    def __init__(self, persistence: PersistenceService, config: DiscoveryConfig):
        self.persistence = persistence
        self.config = config

    async def build_site_structure_from_inventories(self) -> ValidationResult:
        """Load every inventory and check that the set is usable.

        The set is valid when every file could be read and together they
        hold at least one live document.
        """
        inventories = await self.persistence.load_all_inventories()
        stats = AggregationStats(total_files=len(inventories))

        for inventory in inventories:
            if inventory.error:
                stats.files_with_errors.append(inventory.name)
                stats.file_details.append(FileDetail(name=inventory.name, error=inventory.error))
                continue
            live = sum(1 for doc in inventory.documents if not doc.is_deleted)
            stats.total_documents += live
            stats.file_details.append(FileDetail(name=inventory.name, document_count=live))

        if stats.files_with_errors:
            reason = f"{len(stats.files_with_errors)} inventory files could not be read"
            return ValidationResult(is_valid=False, reason=reason, stats=stats)
        if stats.total_documents == 0:
            return ValidationResult(
                is_valid=False, reason="No documents found in inventory files", stats=stats
            )
        return ValidationResult(is_valid=True, stats=stats)

    async def validate_site_structure(self) -> ValidationResult:
        result = await self.build_site_structure_from_inventories()
        if result.is_valid:
            logger.info(f"Site structure valid: {result.stats.total_documents} documents")
        else:
            logger.warning(f"Site structure invalid: {result.reason}")
        return result

    @staticmethod
    def _node_for(root: FolderNode, segments: Sequence[str], stats: SiteStats) -> FolderNode:
        node = root
        current = ""
        for segment in segments:
            current = f"{current}/{segment}"
            if segment not in node.subfolders:
                node.subfolders[segment] = FolderNode(path=current)
                stats.total_folders += 1
            node = node.subfolders[segment]
        return node

    async def create_site_structure(
        self,
        excluded_folders: Sequence[str] = (),
        patterns: Sequence[str] = (),
    ) -> Optional[SiteStructure]:
        """Nested folder tree of every live document, None without inventories."""
        inventories = await self.persistence.load_all_inventories()
        inventories = [inv for inv in inventories if not inv.error]
        if not inventories:
            logger.warning("No inventory files available, site structure not built")
            return None

        prefix = self.config.repo_prefix
        root = FolderNode(path="/")
        stats = SiteStats()

        for inventory in inventories:
            for doc in inventory.documents:
                if doc.is_deleted:
                    continue
                segments = strip_repo_prefix(doc.path, prefix).split("/")
                node = self._node_for(root, segments[:-1], stats)
                node.files.append(
                    FileInfo(
                        name=doc.name,
                        ext=doc.ext,
                        path=doc.path,
                        last_modified=doc.last_modified,
                        media_count=doc.media_count,
                    )
                )
                stats.total_files += 1
                stats.total_media_items += doc.media_count
                stats.deepest_nesting = max(stats.deepest_nesting, len(segments) - 1)

        excluded = sorted(set(excluded_folders))
        for path in excluded:
            segments = strip_repo_prefix(path, prefix).split("/")
            parent = self._node_for(root, segments[:-1], stats)
            parent.subfolders.setdefault(
                segments[-1], FolderNode(path="/" + "/".join(segments), excluded=True)
            ).excluded = True
        stats.total_excluded_folders = len(excluded)

        return SiteStructure(
            org=self.config.org,
            repo=self.config.repo,
            last_updated=now_ms(),
            structure=SiteTree(root=root),
            excluded=ExcludedInfo(folders=excluded, patterns=list(patterns)),
            stats=stats,
        )

    async def save_site_structure(self, structure: SiteStructure) -> bool:
        try:
            await self.persistence.save_site_structure(structure)
        except PersistenceError as e:
            logger.error(f"Failed to save site structure: {e}")
            return False
        logger.info(
            f"Site structure saved: {structure.stats.total_files} files in "
            f"{structure.stats.total_folders} folders"
        )
        return True

    async def get_site_statistics(self) -> Optional[Dict[str, Any]]:
        structure = await self.persistence.load_site_structure()
        if structure is None:
            return None
        return {
            **structure.stats.to_json_dict(),
            "lastUpdated": structure.last_updated,
            "excludedPatterns": structure.excluded.patterns,
        }

    def folder_paths(self, structure: SiteStructure) -> List[str]:
        """Every folder path in a structure, depth first."""
        paths: List[str] = []
        stack = list(reversed(structure.structure.root.subfolders.values()))
        while stack:
            node = stack.pop()
            paths.append(node.path)
            stack.extend(reversed(node.subfolders.values()))
        return paths
