"""Service registration for the DI container."""
from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from bookforge.core.config import Settings
from bookforge.db.session import build_engine, build_session_factory
from bookforge.infrastructure.di.container import Container
from bookforge.infrastructure.event_bus import EventBus, InMemoryEventBus
from bookforge.infrastructure.rate_limit import InMemoryRateLimitState, RateLimitState, RedisRateLimitState
from bookforge.services.completion_detection import analytics_failure_subscriber
from bookforge.services.condenser import ChapterCondenser
from bookforge.services.job_handlers import ChapterJobHandlers
from bookforge.services.job_worker import JobWorker
from bookforge.services.llm_client import LLMClient
from bookforge.shared_kernel.domain_events import JobFailedEvent


def _rate_limit_state(settings: Settings) -> RateLimitState:
    if settings.RATE_LIMIT_BACKEND == "redis":
        if not settings.REDIS_URL:
            raise ValueError("RATE_LIMIT_BACKEND=redis requires REDIS_URL")
        return RedisRateLimitState.from_url(settings.REDIS_URL, settings.RATE_LIMIT_REDIS_KEY)
    return InMemoryRateLimitState()


def _event_bus(container: Container) -> Optional[EventBus]:
    settings = container.resolve(Settings)
    if not settings.EVENT_BUS_ENABLED:
        return None
    bus = InMemoryEventBus()
    bus.subscribe(JobFailedEvent, analytics_failure_subscriber(container.resolve(async_sessionmaker)))
    return bus


def configure_container(container: Container, settings: Settings) -> None:
    """Configure application dependencies."""

    container.register_instance(Settings, settings)

    # Infrastructure
    container.register(AsyncEngine, lambda c: build_engine(settings=c.resolve(Settings)))
    container.register(
        async_sessionmaker,
        lambda c: build_session_factory(c.resolve(AsyncEngine)),
    )
    container.register(RateLimitState, lambda c: _rate_limit_state(c.resolve(Settings)))
    container.register(EventBus, _event_bus)
    container.register(LLMClient, lambda c: LLMClient(settings=c.resolve(Settings)))

    # Domain services
    container.register(
        ChapterCondenser,
        lambda c: ChapterCondenser(c.resolve(LLMClient), settings=c.resolve(Settings)),
    )
    container.register(
        ChapterJobHandlers,
        lambda c: ChapterJobHandlers(
            c.resolve(async_sessionmaker),
            c.resolve(LLMClient),
            event_bus=c.resolve(EventBus),
            settings=c.resolve(Settings),
        ),
    )
    container.register(
        JobWorker,
        lambda c: JobWorker(
            c.resolve(async_sessionmaker),
            c.resolve(RateLimitState),
            c.resolve(ChapterJobHandlers).handlers(),
            event_bus=c.resolve(EventBus),
            settings=c.resolve(Settings),
        ),
    )


def build_container(settings: Optional[Settings] = None) -> Container:
    """Return a configured container for one process."""
    if settings is None:
        from bookforge.core.config import settings as default_settings

        settings = default_settings
    container = Container()
    configure_container(container, settings)
    return container


def session_factory(container: Container) -> async_sessionmaker[AsyncSession]:
    return container.resolve(async_sessionmaker)
