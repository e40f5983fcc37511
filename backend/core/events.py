"""
Fire-and-forget notifications for dashboards.

Events are collected while a transaction is open and only published after it
commits. A failing subscriber is logged and never propagates to the caller.
"""

import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Tuple, Union

logger = logging.getLogger(__name__)

INVENTORY_CHANGED = "inventory.changed"
INVENTORY_LOW_STOCK = "inventory.low_stock"
ORDER_UPDATED = "order.updated"
LOYALTY_UPDATED = "loyalty.updated"

Handler = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]


class EventEmitter:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: Handler) -> None:
        """Use "*" to receive every event."""
        self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: Handler) -> None:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        for handler in [*self._handlers.get(event_name, []), *self._handlers.get("*", [])]:
            try:
                result = handler(event_name, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("Event handler for %s failed", event_name, exc_info=True)


class PendingEvents:
    """Buffer of events raised inside a transaction."""

    def __init__(self) -> None:
        self._events: List[Tuple[str, Dict[str, Any]]] = []

    def add(self, event_name: str, payload: Dict[str, Any]) -> None:
        self._events.append((event_name, payload))

    def clear(self) -> None:
        self._events.clear()

    async def publish(self, emitter: "EventEmitter") -> None:
        events, self._events = self._events, []
        for name, payload in events:
            await emitter.emit(name, payload)


emitter = EventEmitter()


def get_event_emitter() -> EventEmitter:
    return emitter
