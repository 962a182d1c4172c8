"""Core pydantic models for discovered documents.

A document is an HTML page found while walking the repository. Its record
carries two kinds of state:

1. Discovery state: where the page is and when it last changed
2. Scan state: what a downstream media scanner has done with it

Discovery owns the first and only resets the second when a page changes.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DiscoveryType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class ScanStatus(str, Enum):
    PENDING = "pending"
    SCANNED = "scanned"
    FAILED = "failed"
    DELETED = "deleted"


class EntryStatus(str, Enum):
    """Outcome of merging a document against the previous inventory."""

    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"


class CamelModel(BaseModel):
    """Base model persisted with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RepositoryItem(CamelModel):
    """One entry returned by a repository listing."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    name: str
    path: str
    ext: Optional[str] = None
    last_modified: Optional[int] = None

    @property
    def is_folder(self) -> bool:
        return not self.ext

    @property
    def is_hidden(self) -> bool:
        return self.name.startswith(".")

    @property
    def is_html(self) -> bool:
        return self.ext == "html"


class Document(CamelModel):
    """Inventory record for one HTML page."""

    # Fields written by downstream scanners are carried through untouched
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    path: str
    name: str
    ext: str = "html"
    last_modified: int = 0
    discovered_at: str
    discovery_complete: bool = True

    scan_status: ScanStatus = ScanStatus.PENDING
    scan_complete: bool = False
    needs_rescan: bool = False
    last_scanned_at: Optional[str] = None
    scan_attempts: int = 0
    scan_errors: List[str] = Field(default_factory=list)
    media_count: int = Field(default=0, ge=0)

    entry_status: Optional[EntryStatus] = None
    deleted_at: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.entry_status == EntryStatus.DELETED
