"""Pydantic schemas for site-discovery."""

from site_discovery.schemas.base import (
    Document,
    DiscoveryType,
    EntryStatus,
    RepositoryItem,
    ScanStatus,
)
from site_discovery.schemas.checkpoint import (
    Checkpoint,
    CheckpointStatus,
    FolderStatus,
    RunLock,
)
from site_discovery.schemas.sheet import build_single_sheet, parse_sheet, parse_single_row
from site_discovery.schemas.site import (
    AggregationStats,
    FileInfo,
    FolderNode,
    InventoryFile,
    SiteStats,
    SiteStructure,
    ValidationResult,
)

__all__ = [
    "AggregationStats",
    "Checkpoint",
    "CheckpointStatus",
    "DiscoveryType",
    "Document",
    "EntryStatus",
    "FileInfo",
    "FolderNode",
    "FolderStatus",
    "InventoryFile",
    "RepositoryItem",
    "RunLock",
    "ScanStatus",
    "SiteStats",
    "SiteStructure",
    "ValidationResult",
    "build_single_sheet",
    "parse_sheet",
    "parse_single_row",
]
