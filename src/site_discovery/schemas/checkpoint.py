"""Checkpoint recorded in the repository after every discovery run."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field

from site_discovery.schemas.base import CamelModel, DiscoveryType
from site_discovery.schemas.sheet import SHEET_SCHEMA_VERSION


class CheckpointStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class FolderStatus(CamelModel):
    status: str = "completed"
    completed_at: Optional[int] = None
    document_count: int = 0
    discovery_file: Optional[str] = None
    error: Optional[str] = None


class Checkpoint(CamelModel):
    """Summary of the most recent run, used to pick full or incremental mode."""

    schema_version: int = SHEET_SCHEMA_VERSION
    total_folders: int = 0
    completed_folders: int = 0
    total_documents: int = 0
    errors: int = 0
    status: CheckpointStatus = CheckpointStatus.IDLE
    discovery_type: DiscoveryType = DiscoveryType.FULL
    discovery_start_time: Optional[int] = None
    discovery_end_time: Optional[int] = None
    excluded_folders: List[str] = Field(default_factory=list)
    excluded_patterns: List[str] = Field(default_factory=list)
    folder_status: Dict[str, FolderStatus] = Field(default_factory=dict)
    last_updated: Optional[int] = None

    @property
    def is_completed(self) -> bool:
        return self.status == CheckpointStatus.COMPLETED


class RunLock(CamelModel):
    """Coarse lock preventing overlapping runs against one repository."""

    owner: str
    acquired_at: int
    refreshed_at: Optional[int] = None

    @property
    def last_seen(self) -> int:
        return self.refreshed_at or self.acquired_at
