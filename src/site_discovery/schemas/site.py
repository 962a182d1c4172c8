"""Site structure and inventory aggregation models."""

from typing import Dict, List, Optional

from pydantic import Field

from site_discovery.schemas.base import CamelModel, Document


class FileInfo(CamelModel):
    name: str
    ext: str
    path: str
    last_modified: int = 0
    media_count: int = 0


class FolderNode(CamelModel):
    path: str
    type: str = "folder"
    excluded: bool = False
    files: List[FileInfo] = Field(default_factory=list)
    subfolders: Dict[str, "FolderNode"] = Field(default_factory=dict)


class SiteStats(CamelModel):
    total_folders: int = 0
    total_files: int = 0
    total_excluded_folders: int = 0
    total_media_items: int = 0
    deepest_nesting: int = 0


class ExcludedInfo(CamelModel):
    folders: List[str] = Field(default_factory=list)
    patterns: List[str] = Field(default_factory=list)


class SiteTree(CamelModel):
    root: FolderNode


class SiteStructure(CamelModel):
    """Nested tree of every live document, rebuilt at the end of a run."""

    org: str
    repo: str
    version: str = "1.0"
    last_updated: int
    structure: SiteTree
    excluded: ExcludedInfo = Field(default_factory=ExcludedInfo)
    stats: SiteStats = Field(default_factory=SiteStats)


class InventoryFile(CamelModel):
    """One loaded inventory file, error set when it could not be read."""

    name: str
    documents: List[Document] = Field(default_factory=list)
    error: Optional[str] = None


class FileDetail(CamelModel):
    name: str
    document_count: int = 0
    error: Optional[str] = None


class AggregationStats(CamelModel):
    total_files: int = 0
    total_documents: int = 0
    files_with_errors: List[str] = Field(default_factory=list)
    file_details: List[FileDetail] = Field(default_factory=list)


class ValidationResult(CamelModel):
    is_valid: bool
    reason: Optional[str] = None
    stats: AggregationStats = Field(default_factory=AggregationStats)
