"""In-process event bus used by workers and tests."""
from __future__ import annotations

import logging
from typing import List, Type

from bookforge.shared_kernel.domain_events import DomainEvent
from .interfaces import EventBus, EventHandler
from .handlers import EventHandlerRegistry

logger = logging.getLogger(__name__)


class InMemoryEventBus(EventBus):
    def __init__(self, keep_history: bool = False) -> None:
        self._registry = EventHandlerRegistry()
        self._keep_history = keep_history
        self.published: List[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> str:
        event_type = type(event).__name__
        if self._keep_history:
            self.published.append(event)
        handlers = self._registry.get_handlers(event_type)
        logger.debug("Publishing %s to %d handler(s)", event_type, len(handlers))
        for handler in handlers:
            await handler(event)
        return str(event.event_id)

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        self._registry.register(event_type.__name__, handler)
