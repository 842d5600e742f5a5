"""Retry helpers with exponential backoff."""
from __future__ import annotations

import asyncio
import inspect
import random
from typing import Any, Callable, Tuple, Type


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base, 2*base, 4*base ... capped."""
    if attempt < 1:
        return 0.0
    return min(cap, base * (2 ** (attempt - 1)))


async def async_retry(
    func: Callable[..., Any],
    *args: Any,
    retries: int = 3,
    backoff: float = 0.5,
    jitter: float = 0.1,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    **kwargs: Any,
) -> Any:
    delay = backoff
    attempt = 0
    while True:
        try:
            if inspect.iscoroutinefunction(func):
                return await func(*args, **kwargs)
            return await asyncio.to_thread(func, *args, **kwargs)
        except exceptions:
            attempt += 1
            if attempt > retries:
                raise
            await asyncio.sleep(delay + random.random() * jitter)
            delay *= 2
