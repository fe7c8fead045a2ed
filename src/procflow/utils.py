"""Retry helpers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterable, Iterator
from typing import Callable, TypeVar, Union

from .log import log_event

__all__ = ["retry", "exp_backoff"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

Delay = Union[float, Iterable[float]]


def exp_backoff(max_delay: float = 30.0, base: float = 0.1) -> Iterator[float]:
    """Yield base, 2*base, 4*base, ... capped at max_delay, forever."""
    if base <= 0:
        raise ValueError(f"base must be positive, got {base}")
    delay = base
    while True:
        yield min(delay, max_delay)
        delay *= 2


async def retry(
    count: int,
    fn: Callable[[], Awaitable[T]],
    *,
    delay: Delay = 0,
) -> T:
    """Call an async function until it succeeds, at most count times.

    Args:
        count: Maximum number of attempts
        fn: Zero-argument callable returning an awaitable (for example
            lambda: sh("curl -f {}", url))
        delay: Seconds between attempts, or an iterable of delays such as
            exp_backoff(); the last value is reused when it runs out

    Returns:
        The result of the first successful attempt

    Raises:
        The exception of the last attempt
    """
    if count < 1:
        raise ValueError(f"count must be at least 1, got {count}")

    delays = None if isinstance(delay, (int, float)) else iter(delay)
    current = float(delay) if delays is None else 0.0

    for attempt in range(1, count + 1):
        try:
            return await fn()
        except Exception as e:
            if attempt >= count:
                raise
            if delays is not None:
                current = next(delays, current)

            logger.debug(f"Attempt {attempt}/{count} failed, retrying in {current}s: {e}")
            log_event({
                "kind": "retry",
                "attempt": attempt,
                "count": count,
                "delay": current,
                "error": str(e).splitlines()[0] if str(e) else type(e).__name__,
            })
            if current > 0:
                await asyncio.sleep(current)

    raise AssertionError("unreachable")
