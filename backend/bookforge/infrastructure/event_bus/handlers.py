"""Registry for event handlers."""
from __future__ import annotations

from typing import Dict, List

from .interfaces import EventHandler


class EventHandlerRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = {}

    def register(self, event_type_name: str, handler: EventHandler) -> None:
        handlers = self._handlers.setdefault(event_type_name, [])
        if handler not in handlers:
            handlers.append(handler)

    def get_handlers(self, event_type_name: str) -> List[EventHandler]:
        return list(self._handlers.get(event_type_name, []))
