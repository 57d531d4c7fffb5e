"""Event bus shared by client and edge connections."""
import asyncio
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .protocol import EventMessage, EventType


class EventEmitter:
    """Async event emitter with listener registry and bounded history."""

    def __init__(self, max_history: int = 1000):
        self._listeners: Dict[EventType, List[Callable]] = defaultdict(list)
        self._seq_counter = 0
        self._event_history: List[EventMessage] = []
        self._max_history = max_history

    def on(self, event: EventType, handler: Callable) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        event = EventType(event)
        if handler not in self._listeners[event]:
            self._listeners[event].append(handler)
            logger.debug(f"Registered handler for event: {event.value}")
        return lambda: self.off(event, handler)

    def off(self, event: EventType, handler: Callable) -> None:
        """Unregister a listener."""
        event = EventType(event)
        if handler in self._listeners[event]:
            self._listeners[event].remove(handler)
            logger.debug(f"Unregistered handler for event: {event.value}")

    def once(self, event: EventType, handler: Callable) -> Callable[[], None]:
        """Register a listener that runs once."""
        async def wrapper(message: EventMessage):
            self.off(event, wrapper)
            result = handler(message)
            if asyncio.iscoroutine(result):
                await result
        return self.on(event, wrapper)

    def listener_count(self, event: EventType) -> int:
        return len(self._listeners.get(EventType(event), []))

    async def emit(self, event: EventType, payload: Dict[str, Any]) -> EventMessage:
        """Emit event to all listeners; a failing listener does not affect the others."""
        event = EventType(event)
        self._seq_counter += 1
        event_msg = EventMessage(event=event, payload=payload, seq=self._seq_counter)

        self._event_history.append(event_msg)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history:]

        handlers = list(self._listeners.get(event, []))
        if not handlers:
            logger.debug(f"No handlers for event: {event.value}")
            return event_msg

        tasks = []
        for handler in handlers:
            try:
                result = handler(event_msg)
            except Exception as e:
                logger.error(f"Error in event handler for {event.value}: {e}")
                continue
            if asyncio.iscoroutine(result):
                tasks.append(result)

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Error in event handler for {event.value}: {result}")
        return event_msg

    def get_history(self, event: Optional[EventType] = None, limit: int = 100) -> List[EventMessage]:
        """Return event history, optionally filtered by event type."""
        if event:
            filtered = [e for e in self._event_history if e.event == event]
            return filtered[-limit:]
        return self._event_history[-limit:]

    def clear_listeners(self, event: Optional[EventType] = None) -> None:
        """Clear listeners for one event or all events."""
        if event:
            self._listeners[EventType(event)].clear()
        else:
            self._listeners.clear()
