"""
Observer channel for sync lifecycle events.

The sync service publishes; dashboards, websockets or loggers subscribe.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class SyncEvent:
    INITIALIZED = "initialized"
    PROGRESS = "progress"
    COMPLETED = "completed"

    ALL = (INITIALIZED, PROGRESS, COMPLETED)


class SyncEventBus:
    """Dispatches events to sync or async handlers. A failing handler never breaks the sync."""

    def __init__(self):
        self._handlers: Dict[str, List[Callable[..., Any]]] = defaultdict(list)

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[[], None]:
        """
        Subscribe ``handler`` to ``event``.

        Returns:
            A callable that removes the subscription
        """
        if event not in SyncEvent.ALL:
            raise ValueError(f"Unknown sync event: {event}")
        self._handlers[event].append(handler)

        def unsubscribe():
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)

        return unsubscribe

    async def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Sync event handler for '{event}' failed: {e}", exc_info=True)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))
