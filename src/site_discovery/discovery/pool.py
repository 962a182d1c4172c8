"""Bounded pool of folder units with per-unit control inboxes."""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

from loguru import logger

from site_discovery.discovery.utils import FolderResult
from site_discovery.services.exceptions import UnitStopped


class ControlSignal(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


class UnitState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class UnitControl:
    """Inbox of control signals for one unit.

    The unit calls checkpoint() between steps of its work. Signals are only
    ever delivered as messages, units share no state with the pool.
    """

    def __init__(self, folder_path: str):
        self.folder_path = folder_path
        self.paused = False
        self._inbox: asyncio.Queue[ControlSignal] = asyncio.Queue()

    def send(self, signal: ControlSignal) -> None:
        self._inbox.put_nowait(signal)

    async def checkpoint(self) -> None:
        """Apply pending signals, waiting while paused.

        Raises:
            UnitStopped: If a stop signal was received
        """
        while True:
            try:
                signal = self._inbox.get_nowait()
            except asyncio.QueueEmpty:
                if not self.paused:
                    return
                signal = await self._inbox.get()

            if signal == ControlSignal.STOP:
                raise UnitStopped(f"Unit for {self.folder_path} stopped")
            self.paused = signal == ControlSignal.PAUSE


UnitWork = Callable[[UnitControl], Awaitable[FolderResult]]


@dataclass
class WorkUnit:
    folder_path: str
    folder_name: str
    control: UnitControl
    state: UnitState = UnitState.PENDING
    task: Optional[asyncio.Task] = None
    started_at: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "folder_path": self.folder_path,
            "state": self.state.value,
            "paused": self.control.paused,
            "running_for": time.monotonic() - self.started_at if self.started_at else 0.0,
            "error": self.error,
        }


class FolderWorkerPool:
    """Runs at most max_workers folder units at once.

    Each unit owns one folder path and reports exactly one FolderResult on
    the shared result channel, unless the pool is cancelled first.
    """

    def __init__(self, max_workers: int = 4):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self._semaphore = asyncio.Semaphore(max_workers)
        self._units: Dict[str, WorkUnit] = {}
        self._results: asyncio.Queue[Optional[FolderResult]] = asyncio.Queue()
        self._pending_results = 0
        self._closed = False

    @property
    def active_count(self) -> int:
        return sum(1 for unit in self._units.values() if unit.state == UnitState.RUNNING)

    @property
    def has_active_units(self) -> bool:
        return any(unit.task and not unit.task.done() for unit in self._units.values())

    def assign(
        self, folder_path: str, work: UnitWork, folder_name: Optional[str] = None
    ) -> WorkUnit:
        """Start a unit for a folder.

        Raises:
            ValueError: If the folder already has a unit
            RuntimeError: If the pool was cancelled
        """
        if self._closed:
            raise RuntimeError("Pool has been cancelled")
        if folder_path in self._units:
            raise ValueError(f"Folder {folder_path} is already assigned")

        unit = WorkUnit(
            folder_path=folder_path,
            folder_name=folder_name or folder_path.rstrip("/").rsplit("/", 1)[-1],
            control=UnitControl(folder_path),
        )
        self._units[folder_path] = unit
        self._pending_results += 1
        unit.task = asyncio.create_task(self._run_unit(unit, work), name=f"discover:{folder_path}")
        return unit

    async def _run_unit(self, unit: WorkUnit, work: UnitWork) -> None:
        try:
            async with self._semaphore:
                unit.state = UnitState.RUNNING
                unit.started_at = time.monotonic()
                # Signals sent while queued apply before any work starts
                await unit.control.checkpoint()
                result = await work(unit.control)
            unit.state = UnitState.FAILED if result.error else UnitState.COMPLETED
        except UnitStopped:
            logger.debug(f"Unit {unit.folder_path} stopped")
            unit.state = UnitState.CANCELLED
            result = FolderResult(unit.folder_path, unit.folder_name, stopped=True)
        except asyncio.CancelledError:
            unit.state = UnitState.CANCELLED
            raise
        except Exception as e:
            logger.exception(f"Unit {unit.folder_path} failed: {e}")
            unit.state = UnitState.FAILED
            unit.error = str(e)
            result = FolderResult(unit.folder_path, unit.folder_name, error=str(e))

        await self._results.put(result)

    async def results(self) -> AsyncIterator[FolderResult]:
        """Yield results as units finish, until all have reported or the pool is cancelled."""
        while self._pending_results > 0:
            result = await self._results.get()
            if result is None:
                return
            self._pending_results -= 1
            self._units.pop(result.folder_path, None)
            yield result

    def send(self, folder_path: str, signal: ControlSignal) -> bool:
        unit = self._units.get(folder_path)
        if unit is None:
            return False
        unit.control.send(signal)
        return True

    def broadcast(self, signal: ControlSignal) -> int:
        """Send a signal to every unit that has not finished, returns how many got it."""
        delivered = 0
        for unit in self._units.values():
            if unit.task and not unit.task.done():
                unit.control.send(signal)
                delivered += 1
        logger.debug(f"Broadcast {signal.value} to {delivered} units")
        return delivered

    async def cancel_all(self) -> None:
        """Stop every unit, wait for them to finish and close the result channel."""
        self._closed = True
        units = list(self._units.values())
        tasks = []
        for unit in units:
            unit.control.send(ControlSignal.STOP)
            if unit.task and not unit.task.done():
                unit.task.cancel()
                tasks.append(unit.task)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for unit in units:
            if unit.state in (UnitState.PENDING, UnitState.RUNNING):
                unit.state = UnitState.CANCELLED

        logger.info(f"Cancelled {len(tasks)} folder units")
        self._units.clear()
        self._pending_results = 0
        self._results.put_nowait(None)

    def get_status(self) -> Dict[str, dict]:
        return {path: unit.to_dict() for path, unit in self._units.items()}
