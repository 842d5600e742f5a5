"""In-process event bus for job, versioning, revision and completion events."""

from .interfaces import EventBus, EventHandler
from .handlers import EventHandlerRegistry
from .in_memory import InMemoryEventBus

__all__ = [
    "EventBus",
    "EventHandler",
    "EventHandlerRegistry",
    "InMemoryEventBus",
]
