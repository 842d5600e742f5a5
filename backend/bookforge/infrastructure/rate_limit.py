"""Shared provider rate-limit state.

Workers consult this before every pickup. A pause only ever moves the reset
time later, so two workers hitting the limit at once settle on the later reset.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Optional

import redis.asyncio as redis_asyncio
from redis.exceptions import WatchError

from bookforge.models.types import utc_now

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class RateLimitState(ABC):
    """Current provider pause, if any. Times are naive UTC."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock

    @abstractmethod
    async def pause_until(self, reset_at: datetime) -> datetime:
        """Extend the pause to ``reset_at`` and return the effective reset time."""
        raise NotImplementedError

    @abstractmethod
    async def reset_at(self) -> Optional[datetime]:
        """Reset time of the current pause, or None when not limited."""
        raise NotImplementedError

    @abstractmethod
    async def clear(self) -> None:
        raise NotImplementedError

    async def is_limited(self) -> bool:
        return await self.reset_at() is not None

    async def seconds_until_reset(self) -> float:
        reset_at = await self.reset_at()
        if reset_at is None:
            return 0.0
        return max(0.0, (reset_at - self._clock()).total_seconds())

    async def close(self) -> None:
        """Release connections held by the backend."""
        return None


class InMemoryRateLimitState(RateLimitState):
    """Pause state shared by the coroutines of one worker process.

    Reads and writes never await, so they are atomic on the event loop and the
    state can outlive any one loop (each Celery task run starts a new one).
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        super().__init__(clock)
        self._reset_at: Optional[datetime] = None

    async def pause_until(self, reset_at: datetime) -> datetime:
        if self._reset_at is None or reset_at > self._reset_at:
            self._reset_at = reset_at
            logger.warning("Provider rate limit: pausing job pickups until %s", reset_at.isoformat())
        return self._reset_at

    async def reset_at(self) -> Optional[datetime]:
        if self._reset_at is not None and self._reset_at <= self._clock():
            logger.info("Provider rate limit pause expired")
            self._reset_at = None
        return self._reset_at

    async def clear(self) -> None:
        self._reset_at = None


def _to_epoch_ms(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def _from_stored(raw) -> Optional[datetime]:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode()
    return datetime.fromisoformat(raw)


class RedisRateLimitState(RateLimitState):
    """Pause state shared by every worker process through one redis key.

    Updates use WATCH/MULTI so concurrent writers never shorten the pause.
    The key expires at the reset time.
    """

    def __init__(self, client: redis_asyncio.Redis, key: str, clock: Clock = utc_now) -> None:
        super().__init__(clock)
        self._client = client
        self._key = key

    @classmethod
    def from_url(cls, url: str, key: str, clock: Clock = utc_now) -> "RedisRateLimitState":
        return cls(redis_asyncio.from_url(url), key, clock)

    async def pause_until(self, reset_at: datetime) -> datetime:
        async with self._client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self._key)
                    current = _from_stored(await pipe.get(self._key))
                    effective = reset_at if current is None or reset_at > current else current
                    pipe.multi()
                    pipe.set(self._key, effective.isoformat(), pxat=_to_epoch_ms(effective))
                    await pipe.execute()
                    if effective == reset_at:
                        logger.warning("Provider rate limit: pausing job pickups until %s", reset_at.isoformat())
                    return effective
                except WatchError:
                    logger.debug("Rate limit key changed during update; retrying")
                    continue

    async def reset_at(self) -> Optional[datetime]:
        current = _from_stored(await self._client.get(self._key))
        if current is not None and current <= self._clock():
            return None
        return current

    async def clear(self) -> None:
        await self._client.delete(self._key)

    async def close(self) -> None:
        await self._client.aclose()
