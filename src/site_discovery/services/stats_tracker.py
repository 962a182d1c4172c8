"""Progress counters for a discovery run, mirrored to the local database."""

from typing import Any, Dict, Optional

from loguru import logger

from site_discovery.models import ProgressRecord
from site_discovery.repository import ProgressRepository

COUNTER_FIELDS = ("total_folders", "completed_folders", "total_documents", "errors")


class StatsTracker:
    """Tracks folder, document and error counts.

    Writes go to memory and the progress record together. Reads always come
    from the progress record, so a restarted process sees the last persisted
    values.
    """

    def __init__(self, repository: ProgressRepository, key: str):
        self.repository = repository
        self.key = key
        self._stats: Dict[str, Any] = self._empty()

    @staticmethod
    def _empty() -> Dict[str, Any]:
        return {
            "total_folders": 0,
            "completed_folders": 0,
            "total_documents": 0,
            "errors": 0,
            "status": "idle",
            "discovery_type": "full",
        }

    async def _persist(self) -> None:
        await self.repository.upsert(self.key, self._stats)

    async def reset(self) -> None:
        """Zero every counter for a new run."""
        self._stats = self._empty()
        await self._persist()

    async def clear(self) -> None:
        """Drop the progress record entirely."""
        self._stats = self._empty()
        await self.repository.delete_by_key(self.key)

    async def restore(self) -> Dict[str, Any]:
        """Load the in-memory counters from the progress record."""
        self._stats = await self._load()
        return dict(self._stats)

    async def set_total_folders(self, total: int) -> None:
        self._stats["total_folders"] = max(0, total)
        self._stats["completed_folders"] = min(
            self._stats["completed_folders"], self._stats["total_folders"]
        )
        await self._persist()

    async def increment_completed_folders(self) -> int:
        """Count one more finished folder, never exceeding the total."""
        if self._stats["completed_folders"] < self._stats["total_folders"]:
            self._stats["completed_folders"] += 1
        else:
            logger.warning(
                f"Completed folders already at total ({self._stats['total_folders']}), ignoring"
            )
        await self._persist()
        return self._stats["completed_folders"]

    async def increment_total_documents(self, count: int = 1) -> int:
        self._stats["total_documents"] += max(0, count)
        await self._persist()
        return self._stats["total_documents"]

    async def increment_errors(self) -> int:
        self._stats["errors"] += 1
        await self._persist()
        return self._stats["errors"]

    async def set_status(self, status: str, discovery_type: Optional[str] = None) -> None:
        self._stats["status"] = status
        if discovery_type:
            self._stats["discovery_type"] = discovery_type
        await self._persist()

    async def update_progress(self, **fields: Any) -> None:
        """Overwrite counters directly, used when resuming from a checkpoint."""
        for name, value in fields.items():
            if name in COUNTER_FIELDS:
                self._stats[name] = max(0, int(value))
        await self._persist()

    async def _load(self) -> Dict[str, Any]:
        record: Optional[ProgressRecord] = await self.repository.find_by_key(self.key)
        if record is None:
            return self._empty()
        return {
            "total_folders": record.total_folders,
            "completed_folders": record.completed_folders,
            "total_documents": record.total_documents,
            "errors": record.errors,
            "status": record.status,
            "discovery_type": record.discovery_type,
        }

    async def get_progress(self) -> Dict[str, Any]:
        """Current counters, read back from the progress record."""
        return await self._load()

    async def get_progress_summary(self) -> Dict[str, Any]:
        progress = await self._load()
        total = progress["total_folders"]
        progress["folder_progress"] = (
            round(progress["completed_folders"] / total * 100) if total else 0
        )
        return progress

    async def get_discovery_stats(self) -> Dict[str, Any]:
        progress = await self._load()
        total = progress["total_folders"]
        completed = progress["completed_folders"]
        progress["completion_percentage"] = round(completed / total * 100, 1) if total else 0.0
        progress["is_complete"] = total > 0 and completed >= total
        return progress

    @property
    def snapshot(self) -> Dict[str, Any]:
        """In-memory counters, without a database round trip."""
        return dict(self._stats)
