"""Configuration management for site-discovery."""

from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DATABASE_NAME = "discovery.db"
DATA_DIR_NAME = "data"

STORAGE_DIR = ".media"
PAGES_DIR = f"{STORAGE_DIR}/.pages"
PROCESSING_DIR = f"{STORAGE_DIR}/.processing"
SESSIONS_DIR = f"{STORAGE_DIR}/.sessions"

# Inventory name reserved for documents that live directly in the repository root
ROOT_INVENTORY = "root"


class DiscoveryConfig(BaseSettings):
    """Configuration for discovering a single org/repo.

    Instances are immutable and are passed to every component at construction.
    """

    org: str = Field(description="Repository organisation")
    repo: str = Field(description="Repository name")

    base_url: str = Field(
        default="https://admin.da.live",
        description="Base URL of the repository list/source API",
    )
    token: Optional[str] = Field(default=None, description="Bearer token for the API")

    max_workers: int = Field(default=4, ge=1, description="Folders scanned concurrently")
    exclude_patterns: List[str] = Field(
        default_factory=list,
        description="Exclusion patterns applied in addition to the remote config sheet",
    )

    request_timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    retry_backoff: float = Field(default=1.0, ge=0, description="Base backoff in seconds")

    checkpoint_interval: float = Field(
        default=30.0,
        ge=0,
        description="Seconds between checkpoint writes while a run is active, 0 disables",
    )
    lock_stale_after: float = Field(
        default=300.0,
        gt=0,
        description="Seconds after which another run's lock is ignored",
    )
    lock_refresh_interval: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between run lock refreshes, must be below lock_stale_after",
    )

    home: Path = Field(
        default_factory=lambda: Path.home() / ".site-discovery",
        description="Base path for local state (progress database, logs)",
    )

    model_config = SettingsConfigDict(
        env_prefix="SITE_DISCOVERY_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
        frozen=True,
    )

    @property
    def repo_prefix(self) -> str:
        """Absolute path prefix of every item in the repository."""
        return f"/{self.org}/{self.repo}"

    @property
    def storage_dir(self) -> str:
        return STORAGE_DIR

    @property
    def pages_dir(self) -> str:
        return PAGES_DIR

    @property
    def processing_dir(self) -> str:
        return PROCESSING_DIR

    @property
    def sessions_dir(self) -> str:
        return SESSIONS_DIR

    @property
    def checkpoint_file(self) -> str:
        return f"{PROCESSING_DIR}/discovery-checkpoint.json"

    @property
    def site_structure_file(self) -> str:
        return f"{STORAGE_DIR}/site-structure.json"

    @property
    def config_file(self) -> str:
        return f"{STORAGE_DIR}/config.json"

    @property
    def media_index_file(self) -> str:
        return f"{STORAGE_DIR}/media.json"

    @property
    def lock_file(self) -> str:
        return f"{SESSIONS_DIR}/discovery-lock.json"

    @property
    def progress_key(self) -> str:
        """Key of the durable progress record for this repository."""
        return f"{self.org}/{self.repo}:discovery-checkpoint"

    @property
    def database_path(self) -> Path:
        """Get SQLite database path."""
        return self.home / DATA_DIR_NAME / DATABASE_NAME

    def inventory_file(self, folder_name: str) -> str:
        """Repository-relative path of a folder's inventory file."""
        return f"{PAGES_DIR}/{folder_name}.json"

    @field_validator("home")
    @classmethod
    def ensure_path_exists(cls, v: Path) -> Path:
        """Ensure home path exists."""
        if not v.exists():
            v.mkdir(parents=True)
        return v

    @field_validator("exclude_patterns")
    @classmethod
    def strip_patterns(cls, v: List[str]) -> List[str]:
        return [p.strip() for p in v if p and p.strip()]

    @model_validator(mode="after")
    def check_lock_timing(self) -> "DiscoveryConfig":
        if self.lock_refresh_interval >= self.lock_stale_after:
            raise ValueError("lock_refresh_interval must be less than lock_stale_after")
        return self
