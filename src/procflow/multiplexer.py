"""Replaying fan-out of a single byte stream.

An OS pipe has exactly one reader. StreamMultiplexer puts an append-only
chunk log behind that reader and gives every consumer its own cursor into the
log, so consumers are independent and a consumer that attaches late (even
after the source has finished) still sees the full ordered history.

The log is unbounded and is kept for the lifetime of the multiplexer.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import AsyncIterator

__all__ = ["StreamMultiplexer"]

logger = logging.getLogger(__name__)


class StreamMultiplexer:
    """Multi-consumer byte sequence with replay semantics.

    Example:
        mux = StreamMultiplexer("stdout")
        mux.feed(b"hello ")
        mux.feed(b"world")
        mux.close()

        async for chunk in mux:
            print(chunk)
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._chunks: list[bytes] = []
        self._closed = False
        self._cursors: dict[int, int] = {}
        self._ids = itertools.count(1)
        self._waiters: list[asyncio.Future[None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def chunks(self) -> tuple[bytes, ...]:
        return tuple(self._chunks)

    @property
    def data(self) -> bytes:
        return b"".join(self._chunks)

    @property
    def consumer_count(self) -> int:
        return len(self._cursors)

    def attach(self) -> int:
        """Register a consumer positioned at the start of the log."""
        consumer_id = next(self._ids)
        self._cursors[consumer_id] = 0
        return consumer_id

    def detach(self, consumer_id: int) -> None:
        self._cursors.pop(consumer_id, None)

    def feed(self, chunk: bytes) -> None:
        """Append a chunk and wake every waiting consumer."""
        if self._closed:
            raise RuntimeError(f"Cannot feed closed stream {self.name!r}")
        if not chunk:
            return
        self._chunks.append(bytes(chunk))
        self._wake()

    def close(self) -> None:
        """Signal end-of-stream to current and future consumers."""
        if self._closed:
            return
        self._closed = True
        logger.debug(
            f"Stream {self.name!r} closed: {len(self._chunks)} chunk(s), "
            f"{self.consumer_count} consumer(s) attached"
        )
        self._wake()

    def _wake(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    async def read(self, consumer_id: int) -> AsyncIterator[bytes]:
        """Yield chunks for one consumer, from its cursor until end-of-stream.

        Raises:
            KeyError: If the consumer is not attached
        """
        if consumer_id not in self._cursors:
            raise KeyError(f"Consumer {consumer_id} is not attached to {self.name!r}")

        while True:
            cursor = self._cursors.get(consumer_id)
            if cursor is None:
                # Detached while reading.
                return
            if cursor < len(self._chunks):
                self._cursors[consumer_id] = cursor + 1
                yield self._chunks[cursor]
                continue
            if self._closed:
                return
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            await waiter

    async def __aiter__(self) -> AsyncIterator[bytes]:
        consumer_id = self.attach()
        try:
            async for chunk in self.read(consumer_id):
                yield chunk
        finally:
            self.detach(consumer_id)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return (
            f"StreamMultiplexer(name={self.name!r}, {state}, "
            f"chunks={len(self._chunks)}, consumers={self.consumer_count})"
        )
