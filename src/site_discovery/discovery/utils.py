"""Types and utilities for discovery runs."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from site_discovery.schemas.base import DiscoveryType, Document
from site_discovery.schemas.site import SiteStructure
from site_discovery.utils import inventory_name_for_folder


class DiscoveryState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass
class DiscoveryReport:
    """Report of document changes found compared to the previous inventory.

    Attributes:
        new: Paths listed now that were not in the inventory
        updated: Paths whose modification time increased
        unchanged: Paths present in both with no newer modification
        deleted: Paths in the inventory that are no longer listed
    """

    new: Set[str] = field(default_factory=set)
    updated: Set[str] = field(default_factory=set)
    unchanged: Set[str] = field(default_factory=set)
    deleted: Set[str] = field(default_factory=set)

    @property
    def total_changes(self) -> int:
        """Total number of documents that need attention."""
        return len(self.new) + len(self.updated) + len(self.deleted)

    def merge(self, other: "DiscoveryReport") -> None:
        self.new |= other.new
        self.updated |= other.updated
        self.unchanged |= other.unchanged
        self.deleted |= other.deleted

    def summary(self) -> Dict[str, int]:
        return {
            "new": len(self.new),
            "updated": len(self.updated),
            "unchanged": len(self.unchanged),
            "deleted": len(self.deleted),
        }


@dataclass
class StructuralChanges:
    """Top-level folders and root files added or removed since the last run."""

    new_folders: List[str] = field(default_factory=list)
    deleted_folders: List[str] = field(default_factory=list)
    new_files: List[str] = field(default_factory=list)
    deleted_files: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.new_folders or self.deleted_folders or self.new_files or self.deleted_files)


@dataclass
class FolderResult:
    """Outcome of scanning one folder, delivered through the pool's result channel."""

    folder_path: str
    folder_name: str
    documents: List[Document] = field(default_factory=list)
    report: Optional[DiscoveryReport] = None
    error: Optional[str] = None
    excluded_folders: List[str] = field(default_factory=list)
    stopped: bool = False
    inventory_name: str = ""

    def __post_init__(self):
        if not self.inventory_name:
            self.inventory_name = inventory_name_for_folder(self.folder_name)

    @property
    def live_documents(self) -> List[Document]:
        return [doc for doc in self.documents if not doc.is_deleted]


class DiscoveryResult(BaseModel):
    """Summary returned by a discovery run."""

    discovery_type: DiscoveryType
    status: DiscoveryState
    total_folders: int = 0
    completed_folders: int = 0
    total_documents: int = 0
    errors: int = 0
    duration: float = 0.0
    new_folders: List[str] = Field(default_factory=list)
    deleted_folders: List[str] = Field(default_factory=list)
    has_changes: bool = False
    report: Dict[str, int] = Field(default_factory=dict)
    folder_errors: Dict[str, str] = Field(default_factory=dict)
    site_structure: Optional[SiteStructure] = None
