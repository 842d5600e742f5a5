import pytest
from uuid import uuid4

from bookforge.infrastructure.event_bus import EventHandlerRegistry, InMemoryEventBus
from bookforge.shared_kernel.domain_events import JobCompletedEvent, JobFailedEvent


@pytest.mark.asyncio
async def test_in_memory_event_bus_dispatches():
    bus = InMemoryEventBus()
    received = []

    async def handler(event):
        received.append(event)

    bus.subscribe(JobCompletedEvent, handler)
    event = JobCompletedEvent(job_id=7, job_type="generate_chapter", target_id=uuid4(), attempts=0)
    await bus.publish(event)
    await bus.publish(JobFailedEvent(job_id=8, job_type="generate_summary"))

    assert received == [event]
    assert bus.published == []


@pytest.mark.asyncio
async def test_in_memory_event_bus_keeps_history():
    bus = InMemoryEventBus(keep_history=True)
    event = JobFailedEvent(job_id=3, job_type="update_states", error="boom")

    event_id = await bus.publish(event)

    assert event_id == str(event.event_id)
    assert bus.published == [event]


def test_registry_ignores_duplicate_handlers():
    registry = EventHandlerRegistry()

    async def handler(event):
        return None

    registry.register("JobFailedEvent", handler)
    registry.register("JobFailedEvent", handler)

    assert registry.get_handlers("JobFailedEvent") == [handler]
    assert registry.get_handlers("JobCompletedEvent") == []
