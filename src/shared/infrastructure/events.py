"""
Event Bus
=========

Typed, in-process publish/subscribe for domain events.

Handlers are plain callables keyed by event class. Dispatch is synchronous so
the publisher's state change and the event are observed in the same order;
handlers that need to do I/O enqueue work for an async consumer instead of
awaiting inline.

Usage:
    bus = EventBus()
    bus.subscribe(BreachDetected, lambda event: queue.put_nowait(event))
    bus.publish(BreachDetected(breach=breach))
"""

from typing import Any, Callable, Dict, List, Type

from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Any], None]


class EventBus:
    """Simple event bus for domain events."""

    def __init__(self):
        self._handlers: Dict[type, List[EventHandler]] = {}
        self._catch_all: List[EventHandler] = []

    def subscribe(self, event_type: Type[Any], handler: EventHandler) -> None:
        """Subscribe to an event type."""
        self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to every event published on this bus."""
        self._catch_all.append(handler)

    def publish(self, event: Any) -> None:
        """
        Publish an event to all subscribers.

        A failing handler is logged and skipped; it never prevents delivery to
        the remaining handlers nor propagates to the publisher.
        """
        for handler in [*self._handlers.get(type(event), []), *self._catch_all]:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    "Error in event handler",
                    extra={
                        "event_type": type(event).__name__,
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                        "error": str(e),
                    },
                    exc_info=True,
                )
