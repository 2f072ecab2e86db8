"""In-process publish/subscribe for coordinator events."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable

from confidential_futures.coordinator.models import LedgerEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[LedgerEvent], Awaitable[None]]


class EventBus:
    """Fan-out of committed ledger events to async subscribers.

    Subscribers registered for a specific event type only see that type;
    wildcard subscribers see everything. A failing subscriber is logged and
    does not affect the publisher or other subscribers.
    """

    def __init__(self) -> None:
        self._handlers: dict[type[LedgerEvent], list[EventHandler]] = defaultdict(list)
        self._wildcard: list[EventHandler] = []

    def subscribe(self, event_type: type[LedgerEvent], handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        self._wildcard.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        for handlers in self._handlers.values():
            while handler in handlers:
                handlers.remove(handler)
        while handler in self._wildcard:
            self._wildcard.remove(handler)

    async def publish(self, event: LedgerEvent) -> None:
        logger.debug("Event %s: %s", event.name, event.to_dict())
        for handler in [*self._handlers.get(type(event), ()), *self._wildcard]:
            try:
                await handler(event)
            except Exception as e:
                logger.error("Error in %s subscriber: %s", event.name, e)

    async def publish_all(self, events: Iterable[LedgerEvent]) -> None:
        for event in events:
            await self.publish(event)


class EventRecorder:
    """Wildcard subscriber that keeps every event it sees, in order."""

    def __init__(self) -> None:
        self.events: list[LedgerEvent] = []

    async def __call__(self, event: LedgerEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type[LedgerEvent]) -> list[LedgerEvent]:
        return [e for e in self.events if isinstance(e, event_type)]

    def names(self) -> list[str]:
        return [e.name for e in self.events]
