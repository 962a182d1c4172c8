"""Push-model events emitted during a discovery run."""

import inspect
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger


class DiscoveryEvent(str, Enum):
    STARTED = "discoveryStarted"
    PROGRESS = "discoveryProgress"
    DOCUMENTS_DISCOVERED = "documentsDiscovered"
    FOLDER_COMPLETE = "folderComplete"
    FOLDER_ERROR = "folderError"
    COMPLETE = "discoveryComplete"
    ERROR = "discoveryError"
    STOPPED = "discoveryStopped"
    PAUSED = "discoveryPaused"
    RESUMED = "discoveryResumed"
    PAGE_DELETED = "pageDeleted"


Listener = Callable[[Dict[str, Any]], Any]


class DiscoveryEvents:
    """Registry of listeners per event.

    Listeners may be plain or async callables. A failing listener is logged
    and does not affect other listeners or the run.
    """

    def __init__(self):
        self._listeners: Dict[DiscoveryEvent, List[Listener]] = defaultdict(list)

    def on(self, event: DiscoveryEvent | str, listener: Listener) -> None:
        self._listeners[DiscoveryEvent(event)].append(listener)

    def off(self, event: DiscoveryEvent | str, listener: Optional[Listener] = None) -> None:
        """Remove one listener, or every listener for the event when none is given."""
        event = DiscoveryEvent(event)
        if listener is None:
            self._listeners.pop(event, None)
        elif listener in self._listeners[event]:
            self._listeners[event].remove(listener)

    def listener_count(self, event: DiscoveryEvent | str) -> int:
        return len(self._listeners.get(DiscoveryEvent(event), []))

    async def emit(self, event: DiscoveryEvent, payload: Optional[Dict[str, Any]] = None) -> None:
        payload = payload or {}
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"Listener for {event.value} failed: {e}")
