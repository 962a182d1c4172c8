"""Reads and writes discovery state stored inside the repository."""

import socket
import uuid
from typing import List, Optional

from loguru import logger
from pydantic import ValidationError

from site_discovery.api_client import RepositoryClient
from site_discovery.config import DiscoveryConfig
from site_discovery.ignore_utils import merge_patterns, parse_exclusion_rows
from site_discovery.schemas.base import Document
from site_discovery.schemas.checkpoint import Checkpoint, RunLock
from site_discovery.schemas.sheet import build_single_sheet, parse_sheet, parse_single_row
from site_discovery.schemas.site import InventoryFile, SiteStructure
from site_discovery.services.exceptions import (
    PersistenceError,
    RepositoryAPIError,
    SchemaVersionError,
)
from site_discovery.utils import now_ms


def default_lock_owner() -> str:
    """Identifier for this process when holding the run lock."""
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class PersistenceService:
    """Inventory files, checkpoint, site structure and run lock.

    Every file is a sheet envelope written in a single request, so readers
    see either the old or the new content.
    """

    def __init__(self, client: RepositoryClient, config: DiscoveryConfig):
        self.client = client
        self.config = config

    @property
    def required_folders(self) -> List[str]:
        return [
            self.config.storage_dir,
            self.config.pages_dir,
            self.config.processing_dir,
            self.config.sessions_dir,
        ]

    async def ensure_required_folders(self) -> None:
        """Create the storage folders, failures are logged and tolerated."""
        for folder in self.required_folders:
            if not await self.client.ensure_folder(folder):
                logger.warning(f"Storage folder {folder} could not be ensured")

    async def _write_sheet(self, path: str, data) -> None:
        try:
            await self.client.save_json(path, build_single_sheet(data))
        except RepositoryAPIError as e:
            logger.error(f"Failed to write {path}: {e}")
            raise PersistenceError(f"Failed to write {path}: {e}") from e

    async def _read_rows(self, path: str) -> list:
        try:
            raw = await self.client.get_json(path)
        except RepositoryAPIError as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e
        return parse_sheet(raw)

    # Inventories

    async def load_inventory(self, folder_name: str) -> List[Document]:
        """Load a folder's inventory, an empty list if it was never written.

        Raises:
            PersistenceError: If the file exists but cannot be read or parsed
        """
        path = self.config.inventory_file(folder_name)
        rows = await self._read_rows(path)
        try:
            return [Document.model_validate(row) for row in rows]
        except ValidationError as e:
            raise PersistenceError(f"Invalid inventory {path}: {e}") from e

    async def save_inventory(self, folder_name: str, documents: List[Document]) -> None:
        """Overwrite a folder's inventory."""
        path = self.config.inventory_file(folder_name)
        await self._write_sheet(path, [doc.to_json_dict() for doc in documents])
        logger.debug(f"Saved {len(documents)} documents to {path}")

    async def delete_inventory(self, folder_name: str) -> bool:
        path = self.config.inventory_file(folder_name)
        try:
            deleted = await self.client.delete_file(path)
        except RepositoryAPIError as e:
            raise PersistenceError(f"Failed to delete {path}: {e}") from e
        logger.debug(f"Deleted inventory {path}: {deleted}")
        return deleted

    async def list_inventory_names(self) -> List[str]:
        """Names of every inventory file, without the .json extension."""
        try:
            items = await self.client.list_path(self.config.pages_dir)
        except RepositoryAPIError as e:
            if e.status_code == 404:
                return []
            raise PersistenceError(f"Failed to list {self.config.pages_dir}: {e}") from e
        return sorted(item.name for item in items if item.ext == "json")

    async def load_all_inventories(self) -> List[InventoryFile]:
        """Load every inventory, recording per-file failures instead of raising."""
        inventories = []
        for name in await self.list_inventory_names():
            try:
                documents = await self.load_inventory(name)
                inventories.append(InventoryFile(name=name, documents=documents))
            except PersistenceError as e:
                logger.warning(f"Could not load inventory {name}: {e}")
                inventories.append(InventoryFile(name=name, error=str(e)))
        return inventories

    async def purge_tombstones(self, folder_name: str) -> int:
        """Physically remove deleted records from an inventory."""
        documents = await self.load_inventory(folder_name)
        live = [doc for doc in documents if not doc.is_deleted]
        purged = len(documents) - len(live)
        if purged:
            await self.save_inventory(folder_name, live)
            logger.info(f"Purged {purged} tombstones from {folder_name}")
        return purged

    # Checkpoint

    async def load_checkpoint(self) -> Checkpoint:
        """Load the last checkpoint, an idle one if missing or unreadable."""
        try:
            row = parse_single_row(await self.client.get_json(self.config.checkpoint_file))
            if row is None:
                return Checkpoint()
            return Checkpoint.model_validate(row)
        except (RepositoryAPIError, SchemaVersionError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable checkpoint: {e}")
            return Checkpoint()

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Write the checkpoint.

        Raises:
            PersistenceError: If the write fails
        """
        checkpoint = checkpoint.model_copy(update={"last_updated": now_ms()})
        await self._write_sheet(self.config.checkpoint_file, checkpoint.to_json_dict())
        logger.debug(f"Checkpoint saved: {checkpoint.status.value}")

    # Site structure

    async def save_site_structure(self, structure: SiteStructure) -> None:
        await self._write_sheet(self.config.site_structure_file, structure.to_json_dict())

    async def load_site_structure(self) -> Optional[SiteStructure]:
        try:
            row = parse_single_row(await self.client.get_json(self.config.site_structure_file))
        except (RepositoryAPIError, SchemaVersionError) as e:
            logger.warning(f"Could not load site structure: {e}")
            return None
        return SiteStructure.model_validate(row) if row else None

    # Configuration

    async def load_exclusion_patterns(self) -> List[str]:
        """Patterns from the remote config sheet merged with the configured ones."""
        try:
            rows = parse_sheet(await self.client.get_json(self.config.config_file))
        except (RepositoryAPIError, SchemaVersionError) as e:
            logger.warning(f"Could not load exclusion config: {e}")
            rows = []
        return merge_patterns(parse_exclusion_rows(rows), self.config.exclude_patterns)

    # Run lock

    async def _read_run_lock(self) -> Optional[RunLock]:
        """Current run lock, None when missing or unreadable."""
        try:
            row = parse_single_row(await self.client.get_json(self.config.lock_file))
            return RunLock.model_validate(row) if row else None
        except (RepositoryAPIError, SchemaVersionError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable run lock: {e}")
            return None

    async def acquire_run_lock(self, owner: str) -> bool:
        """Take the per-repository run lock unless another live owner holds it."""
        lock = await self._read_run_lock()
        if lock:
            age = (now_ms() - lock.last_seen) / 1000
            if lock.owner != owner and age < self.config.lock_stale_after:
                logger.info(f"Run lock held by {lock.owner}, last refreshed {age:.0f}s ago")
                return False
            if lock.owner != owner:
                logger.warning(f"Taking over stale run lock from {lock.owner}")

        await self._write_sheet(
            self.config.lock_file, RunLock(owner=owner, acquired_at=now_ms()).to_json_dict()
        )
        return True

    async def refresh_run_lock(self, owner: str) -> bool:
        """Mark the lock as still in use, False if another owner holds it now.

        Raises:
            PersistenceError: If the lock cannot be written
        """
        lock = await self._read_run_lock()
        if lock is None or lock.owner != owner:
            return False
        refreshed = lock.model_copy(update={"refreshed_at": now_ms()})
        await self._write_sheet(self.config.lock_file, refreshed.to_json_dict())
        return True

    async def release_run_lock(self, owner: str) -> None:
        lock = await self._read_run_lock()
        if lock is None or lock.owner != owner:
            return
        try:
            await self.client.delete_file(self.config.lock_file)
        except RepositoryAPIError as e:
            logger.warning(f"Could not release run lock: {e}")
