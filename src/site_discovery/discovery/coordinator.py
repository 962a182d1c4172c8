"""Coordinator that drives a discovery run end to end."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import logfire
from loguru import logger

from site_discovery.config import ROOT_INVENTORY, DiscoveryConfig
from site_discovery.discovery.aggregator import SiteAggregator
from site_discovery.discovery.events import DiscoveryEvent, DiscoveryEvents, Listener
from site_discovery.discovery.pool import ControlSignal, FolderWorkerPool, UnitControl
from site_discovery.discovery.scanner import FolderScanner, tombstone
from site_discovery.discovery.utils import (
    DiscoveryReport,
    DiscoveryResult,
    DiscoveryState,
    FolderResult,
    StructuralChanges,
)
from site_discovery.ignore_utils import PartitionedItems
from site_discovery.schemas.base import DiscoveryType, Document
from site_discovery.schemas.checkpoint import Checkpoint, CheckpointStatus, FolderStatus
from site_discovery.schemas.site import SiteStructure, ValidationResult
from site_discovery.services.exceptions import (
    DiscoveryInProgressError,
    FatalDiscoveryError,
    PersistenceError,
    RepositoryAPIError,
)
from site_discovery.services.media_cleanup import MediaCleanup, NullMediaCleanup
from site_discovery.services.persistence_service import PersistenceService, default_lock_owner
from site_discovery.services.stats_tracker import StatsTracker
from site_discovery.utils import (
    folder_name_for,
    folder_name_for_inventory,
    inventory_name_for_folder,
    now_ms,
    utc_now_iso,
)


@dataclass
class _RunContext:
    """Mutable bookkeeping for a single run."""

    discovery_type: DiscoveryType
    checkpoint: Checkpoint
    patterns: List[str]
    started: float
    changes: StructuralChanges = field(default_factory=StructuralChanges)
    report: DiscoveryReport = field(default_factory=DiscoveryReport)
    folder_errors: Dict[str, str] = field(default_factory=dict)
    excluded: List[str] = field(default_factory=list)
    last_checkpoint: float = 0.0


class DiscoveryCoordinator:
    """Runs full or incremental discovery over one repository.

    State moves idle -> running -> completed | error | stopped, and between
    running and paused. Only one run per coordinator, and per repository
    through the remote run lock, is active at a time.
    """

    def __init__(
        self,
        config: DiscoveryConfig,
        persistence: PersistenceService,
        stats: StatsTracker,
        scanner: FolderScanner,
        aggregator: SiteAggregator,
        media_cleanup: Optional[MediaCleanup] = None,
        events: Optional[DiscoveryEvents] = None,
        lock_owner: Optional[str] = None,
    ):
        self.config = config
        self.persistence = persistence
        self.stats = stats
        self.scanner = scanner
        self.aggregator = aggregator
        self.media_cleanup = media_cleanup or NullMediaCleanup()
        self.events = events or DiscoveryEvents()
        self.lock_owner = lock_owner or default_lock_owner()

        self.state = DiscoveryState.IDLE
        self._pool: Optional[FolderWorkerPool] = None
        self._run_lock = asyncio.Lock()
        self._stop_requested = False

    def on(self, event: DiscoveryEvent | str, listener: Listener) -> None:
        self.events.on(event, listener)

    def off(self, event: DiscoveryEvent | str, listener: Optional[Listener] = None) -> None:
        self.events.off(event, listener)

    @property
    def is_running(self) -> bool:
        return self.state in (DiscoveryState.RUNNING, DiscoveryState.PAUSED)

    async def start_discovery(self, force_rescan: bool = False) -> DiscoveryResult:
        """Run discovery, incremental when the last run completed unless forced.

        Raises:
            DiscoveryInProgressError: If a run is already active
            FatalDiscoveryError: If the repository root cannot be listed
            PersistenceError: If the checkpoint cannot be written
        """
        if self.is_running or self._run_lock.locked():
            raise DiscoveryInProgressError("Discovery is already running")

        async with self._run_lock:
            if not await self.persistence.acquire_run_lock(self.lock_owner):
                raise DiscoveryInProgressError(
                    f"Discovery is already running for {self.config.repo_prefix}"
                )
            heartbeat = asyncio.create_task(self._refresh_run_lock(), name="discovery-lock")
            try:
                with logfire.span(
                    "discovery {org}/{repo}",
                    org=self.config.org,
                    repo=self.config.repo,
                    force_rescan=force_rescan,
                ):
                    return await self._run(force_rescan)
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)
                await self.persistence.release_run_lock(self.lock_owner)

    async def _refresh_run_lock(self) -> None:
        """Keep the run lock fresh for as long as the run is active."""
        while True:
            await asyncio.sleep(self.config.lock_refresh_interval)
            try:
                if not await self.persistence.refresh_run_lock(self.lock_owner):
                    logger.warning("Run lock was taken over by another owner")
            except PersistenceError as e:
                logger.warning(f"Could not refresh run lock: {e}")

    async def _run(self, force_rescan: bool) -> DiscoveryResult:
        self._stop_requested = False
        self.state = DiscoveryState.RUNNING

        try:
            previous = await self.persistence.load_checkpoint()
            discovery_type = (
                DiscoveryType.INCREMENTAL
                if previous.is_completed and not force_rescan
                else DiscoveryType.FULL
            )
            logger.info(f"Starting {discovery_type.value} discovery of {self.config.repo_prefix}")

            await self.persistence.ensure_required_folders()
            patterns = await self.persistence.load_exclusion_patterns()
            try:
                top_level = await self.scanner.get_top_level_items(patterns)
            except RepositoryAPIError as e:
                raise FatalDiscoveryError(f"Could not list {self.config.repo_prefix}: {e}") from e

            existing = await self.persistence.list_inventory_names()
            changes = self._folder_changes(top_level, existing)

            if discovery_type == DiscoveryType.FULL:
                await self.reset_discovery_state()
            else:
                await self.stats.reset()

            include_root = bool(top_level.files) or ROOT_INVENTORY in existing
            total_folders = len(top_level.folders) + (1 if include_root else 0)

            checkpoint = Checkpoint(
                status=CheckpointStatus.RUNNING,
                discovery_type=discovery_type,
                total_folders=total_folders,
                discovery_start_time=now_ms(),
                excluded_folders=list(top_level.excluded),
                excluded_patterns=patterns,
            )
            run = _RunContext(
                discovery_type=discovery_type,
                checkpoint=checkpoint,
                patterns=patterns,
                started=time.monotonic(),
                changes=changes,
                excluded=list(top_level.excluded),
                last_checkpoint=time.monotonic(),
            )

            await self.stats.set_total_folders(total_folders)
            await self.stats.set_status(DiscoveryState.RUNNING.value, discovery_type.value)
            await self.persistence.save_checkpoint(checkpoint)
            await self.events.emit(
                DiscoveryEvent.STARTED,
                {
                    "totalFolders": total_folders,
                    "maxWorkers": self.config.max_workers,
                    "discoveryType": discovery_type.value,
                    "newFolders": changes.new_folders,
                    "deletedFolders": changes.deleted_folders,
                },
            )

            if include_root:
                await self._process_root(top_level, run)
            if changes.deleted_folders and not self._stop_requested:
                await self._sweep_deleted_folders(changes.deleted_folders, run)
            if not self._stop_requested:
                await self._discover_folders(top_level, changes.new_folders, run)

            if self._stop_requested:
                return self._build_result(run, DiscoveryState.STOPPED)
            return await self._complete(run)

        except Exception as e:
            if self._stop_requested:
                raise
            self.state = DiscoveryState.ERROR
            logger.error(f"Discovery of {self.config.repo_prefix} failed: {e}")
            try:
                await self.stats.set_status(DiscoveryState.ERROR.value)
            except Exception as status_error:
                logger.warning(f"Could not record error status: {status_error}")
            await self.events.emit(DiscoveryEvent.ERROR, {"error": str(e)})
            raise

    def _folder_changes(
        self, top_level: PartitionedItems, existing: Iterable[str]
    ) -> StructuralChanges:
        current = {folder_name_for(f.path, self.config.repo_prefix) for f in top_level.folders}
        known = {folder_name_for_inventory(name) for name in existing if name != ROOT_INVENTORY}
        return StructuralChanges(
            new_folders=sorted(current - known),
            deleted_folders=sorted(known - current),
        )

    async def get_structural_changes(self) -> StructuralChanges:
        """Folders and root files added or removed since the inventories were written."""
        patterns = await self.persistence.load_exclusion_patterns()
        top_level = await self.scanner.get_top_level_items(patterns)
        changes = self._folder_changes(top_level, await self.persistence.list_inventory_names())

        root_docs = await self.persistence.load_inventory(ROOT_INVENTORY)
        known_files = {doc.path for doc in root_docs if not doc.is_deleted}
        current_files = {item.path for item in top_level.files}
        changes.new_files = sorted(current_files - known_files)
        changes.deleted_files = sorted(known_files - current_files)
        return changes

    async def _process_root(self, top_level: PartitionedItems, run: _RunContext) -> None:
        try:
            result = await self.scanner.process_root_files(top_level.files, run.discovery_type)
        except Exception as e:
            logger.error(f"Root documents failed: {e}")
            result = FolderResult(
                self.config.repo_prefix,
                ROOT_INVENTORY,
                error=str(e),
                inventory_name=ROOT_INVENTORY,
            )
        await self._handle_folder_result(result, run)

    async def _sweep_deleted_folders(self, names: Sequence[str], run: _RunContext) -> None:
        """Tombstone every document of removed folders, clean up their media, then drop them."""
        swept: List[str] = []
        deleted_paths: List[str] = []
        now = utc_now_iso()

        for name in names:
            inventory = inventory_name_for_folder(name)
            try:
                documents = await self.persistence.load_inventory(inventory)
                tombstones = [tombstone(doc, now) for doc in documents]
                await self.persistence.save_inventory(inventory, tombstones)
            except PersistenceError as e:
                logger.warning(f"Could not sweep deleted folder {name}: {e}")
                run.folder_errors[name] = str(e)
                await self.stats.increment_errors()
                continue

            paths = [doc.path for doc in tombstones]
            run.report.deleted.update(paths)
            deleted_paths.extend(paths)
            swept.append(name)
            logger.info(f"Folder {name} removed, {len(paths)} documents tombstoned")
            await self.events.emit(
                DiscoveryEvent.PAGE_DELETED,
                {"folderPath": f"{self.config.repo_prefix}/{name}", "deletedPaths": paths},
            )

        if deleted_paths:
            try:
                await self.media_cleanup.cleanup_media_for_deleted_documents(deleted_paths)
            except PersistenceError as e:
                # Inventories are kept so the next run retries the cleanup
                logger.warning(f"Media cleanup for deleted folders failed: {e}")
                await self.stats.increment_errors()
                return

        for name in swept:
            try:
                await self.persistence.delete_inventory(inventory_name_for_folder(name))
            except PersistenceError as e:
                logger.warning(f"Could not remove inventory of {name}: {e}")

    def _folder_work(self, folder_path: str, run: _RunContext, previous: Optional[List[Document]]):
        async def work(control: UnitControl) -> FolderResult:
            return await self.scanner.scan_folder(
                folder_path, run.discovery_type, run.patterns, previous=previous, control=control
            )

        return work

    async def _discover_folders(
        self, top_level: PartitionedItems, new_folders: Sequence[str], run: _RunContext
    ) -> None:
        if not top_level.folders:
            return

        pool = FolderWorkerPool(self.config.max_workers)
        self._pool = pool
        try:
            for folder in top_level.folders:
                name = folder_name_for(folder.path, self.config.repo_prefix)
                previous = None
                if run.discovery_type == DiscoveryType.INCREMENTAL and name in new_folders:
                    # New folders have no inventory to merge against
                    previous = []
                work = self._folder_work(folder.path, run, previous)
                pool.assign(folder.path, work, folder_name=name)

            if self.state == DiscoveryState.PAUSED:
                pool.broadcast(ControlSignal.PAUSE)

            async for result in pool.results():
                await self._handle_folder_result(result, run)
                await self._maybe_save_checkpoint(run)
        finally:
            if pool.has_active_units:
                await pool.cancel_all()
            if self._pool is pool:
                self._pool = None

    async def _handle_folder_result(self, result: FolderResult, run: _RunContext) -> None:
        if result.stopped:
            return

        live = result.live_documents
        await self.stats.increment_completed_folders()
        await self.stats.increment_total_documents(len(live))
        run.excluded.extend(result.excluded_folders)
        if result.report:
            run.report.merge(result.report)

        run.checkpoint.folder_status[result.inventory_name] = FolderStatus(
            status="error" if result.error else "completed",
            completed_at=now_ms(),
            document_count=len(live),
            discovery_file=self.config.inventory_file(result.inventory_name),
            error=result.error,
        )

        if live:
            await self.events.emit(
                DiscoveryEvent.DOCUMENTS_DISCOVERED,
                {"documents": [doc.to_json_dict() for doc in live], "folder": result.folder_path},
            )

        if result.error:
            await self.stats.increment_errors()
            run.folder_errors[result.folder_name] = result.error
            await self.events.emit(
                DiscoveryEvent.FOLDER_ERROR,
                {
                    "folderPath": result.folder_path,
                    "folderName": result.folder_name,
                    "error": result.error,
                },
            )
        else:
            await self.events.emit(
                DiscoveryEvent.FOLDER_COMPLETE,
                {
                    "folderPath": result.folder_path,
                    "folderName": result.folder_name,
                    "documentCount": len(live),
                    "changes": result.report.summary() if result.report else {},
                },
            )

        await self.events.emit(DiscoveryEvent.PROGRESS, {"progress": self.stats.snapshot})

    def _checkpoint_with_progress(self, run: _RunContext, **updates: Any) -> Checkpoint:
        progress = self.stats.snapshot
        return run.checkpoint.model_copy(
            update={
                "completed_folders": progress["completed_folders"],
                "total_documents": progress["total_documents"],
                "errors": progress["errors"],
                "excluded_folders": sorted(set(run.excluded)),
                **updates,
            }
        )

    async def _maybe_save_checkpoint(self, run: _RunContext) -> None:
        interval = self.config.checkpoint_interval
        if not interval or time.monotonic() - run.last_checkpoint < interval:
            return
        run.last_checkpoint = time.monotonic()
        try:
            await self.persistence.save_checkpoint(self._checkpoint_with_progress(run))
        except PersistenceError as e:
            logger.warning(f"Interval checkpoint failed, continuing: {e}")

    async def _complete(self, run: _RunContext) -> DiscoveryResult:
        checkpoint = self._checkpoint_with_progress(
            run, status=CheckpointStatus.COMPLETED, discovery_end_time=now_ms()
        )
        await self.persistence.save_checkpoint(checkpoint)
        await self.stats.set_status(DiscoveryState.COMPLETED.value)

        structure = await self.build_site_structure(run.excluded, run.patterns)
        self.state = DiscoveryState.COMPLETED
        result = self._build_result(run, DiscoveryState.COMPLETED, structure)

        await self.events.emit(
            DiscoveryEvent.COMPLETE,
            {
                "totalFolders": result.total_folders,
                "completedFolders": result.completed_folders,
                "totalDocuments": result.total_documents,
                "errors": result.errors,
                "duration": result.duration,
                "discoveryType": run.discovery_type.value,
                "siteStructure": structure.to_json_dict() if structure else None,
            },
        )
        logger.info(
            f"Discovery complete: {result.completed_folders}/{result.total_folders} folders, "
            f"{result.total_documents} documents, {result.errors} errors in {result.duration:.1f}s"
        )
        return result

    def _build_result(
        self,
        run: _RunContext,
        status: DiscoveryState,
        structure: Optional[SiteStructure] = None,
    ) -> DiscoveryResult:
        progress = self.stats.snapshot
        if run.discovery_type == DiscoveryType.FULL:
            has_changes = True
        else:
            has_changes = run.changes.has_changes or run.report.total_changes > 0
        return DiscoveryResult(
            discovery_type=run.discovery_type,
            status=status,
            total_folders=progress["total_folders"],
            completed_folders=progress["completed_folders"],
            total_documents=progress["total_documents"],
            errors=progress["errors"],
            duration=time.monotonic() - run.started,
            new_folders=run.changes.new_folders,
            deleted_folders=run.changes.deleted_folders,
            has_changes=has_changes,
            report=run.report.summary(),
            folder_errors=dict(run.folder_errors),
            site_structure=structure,
        )

    async def stop_discovery(self) -> bool:
        """Cancel the active run, counters stay where they are."""
        if not self.is_running:
            logger.info("No discovery running, nothing to stop")
            return False

        self._stop_requested = True
        self.state = DiscoveryState.STOPPED
        if self._pool:
            await self._pool.cancel_all()
        await self.stats.set_status(DiscoveryState.STOPPED.value)
        await self.events.emit(DiscoveryEvent.STOPPED, {"progress": self.stats.snapshot})
        logger.info("Discovery stopped")
        return True

    async def pause_discovery(self) -> bool:
        if self.state != DiscoveryState.RUNNING:
            return False
        self.state = DiscoveryState.PAUSED
        if self._pool:
            self._pool.broadcast(ControlSignal.PAUSE)
        await self.events.emit(DiscoveryEvent.PAUSED, {"progress": self.stats.snapshot})
        logger.info("Discovery paused")
        return True

    async def resume_discovery(self) -> bool:
        if self.state != DiscoveryState.PAUSED:
            return False
        self.state = DiscoveryState.RUNNING
        if self._pool:
            self._pool.broadcast(ControlSignal.RESUME)
        await self.events.emit(DiscoveryEvent.RESUMED, {"progress": self.stats.snapshot})
        logger.info("Discovery resumed")
        return True

    async def reset_discovery_state(self) -> None:
        """Clear progress and the checkpoint so the next run is a full one."""
        await self.stats.clear()
        await self.stats.reset()
        await self.persistence.save_checkpoint(Checkpoint())
        if not self.is_running:
            self.state = DiscoveryState.IDLE

    async def get_progress(self) -> Dict[str, Any]:
        return await self.stats.get_progress()

    async def get_progress_summary(self) -> Dict[str, Any]:
        summary = await self.stats.get_progress_summary()
        summary["state"] = self.state.value
        return summary

    async def validate_site_structure(self) -> ValidationResult:
        return await self.aggregator.validate_site_structure()

    async def build_site_structure(
        self, excluded_folders: Sequence[str] = (), patterns: Sequence[str] = ()
    ) -> Optional[SiteStructure]:
        """Rebuild the site structure from the inventories and save it."""
        structure = await self.aggregator.create_site_structure(excluded_folders, patterns)
        if structure is not None:
            await self.aggregator.save_site_structure(structure)
        return structure
