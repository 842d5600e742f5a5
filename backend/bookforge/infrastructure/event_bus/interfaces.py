"""Event bus contract.

Services publish after their transaction commits, so subscribers never see an
event for state that was rolled back. Subscribers run in the publisher's task
and their exceptions reach the publisher.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Type

from bookforge.shared_kernel.domain_events import DomainEvent

EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus(ABC):
    """Carries job, versioning, revision and completion events."""

    @abstractmethod
    async def publish(self, event: DomainEvent) -> str:
        """Deliver ``event`` to its subscribers and return the event id."""
        raise NotImplementedError

    @abstractmethod
    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        """Call ``handler`` for every published event of exactly ``event_type``."""
        raise NotImplementedError
