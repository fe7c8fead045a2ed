"""StreamMultiplexer tests.

Test coverage:
- Replay for consumers attached before, during and after the stream
- Independent cursors
- Detach during iteration
- Feed/close contract
"""

from __future__ import annotations

import asyncio

import pytest

from procflow.multiplexer import StreamMultiplexer


async def _collect(mux: StreamMultiplexer) -> list[bytes]:
    return [chunk async for chunk in mux]


class TestReplay:
    """Every consumer sees the complete ordered history."""

    @pytest.mark.asyncio
    async def test_late_consumer_after_close(self):
        mux = StreamMultiplexer("stdout")
        mux.feed(b"a")
        mux.feed(b"b")
        mux.close()

        assert await _collect(mux) == [b"a", b"b"]
        assert await _collect(mux) == [b"a", b"b"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_concurrent_consumers(self):
        mux = StreamMultiplexer()
        early = asyncio.create_task(_collect(mux))
        await asyncio.sleep(0)

        mux.feed(b"1")
        await asyncio.sleep(0)
        late = asyncio.create_task(_collect(mux))
        mux.feed(b"2")
        mux.close()

        assert await early == [b"1", b"2"]
        assert await late == [b"1", b"2"]

    @pytest.mark.asyncio
    async def test_empty_stream(self):
        mux = StreamMultiplexer()
        mux.close()
        assert await _collect(mux) == []

    @pytest.mark.asyncio
    async def test_data_property(self):
        mux = StreamMultiplexer()
        mux.feed(b"hello ")
        mux.feed(b"world")
        assert mux.data == b"hello world"
        assert mux.chunks == (b"hello ", b"world")


class TestConsumers:
    """attach/detach/read contract."""

    @pytest.mark.asyncio
    async def test_independent_cursors(self):
        mux = StreamMultiplexer()
        mux.feed(b"x")
        mux.feed(b"y")
        mux.close()

        first = mux.attach()
        second = mux.attach()
        reader = mux.read(first)
        assert await reader.__anext__() == b"x"

        assert [chunk async for chunk in mux.read(second)] == [b"x", b"y"]
        assert await reader.__anext__() == b"y"

    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_detach_ends_iteration(self):
        mux = StreamMultiplexer()
        consumer = mux.attach()
        mux.feed(b"x")

        received = []

        async def consume():
            async for chunk in mux.read(consumer):
                received.append(chunk)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        mux.detach(consumer)
        mux.feed(b"y")
        await task

        assert received == [b"x"]

    @pytest.mark.asyncio
    async def test_read_unknown_consumer(self):
        mux = StreamMultiplexer()
        with pytest.raises(KeyError):
            async for _ in mux.read(42):
                pass

    @pytest.mark.asyncio
    async def test_iteration_detaches(self):
        mux = StreamMultiplexer()
        mux.close()
        await _collect(mux)
        assert mux.consumer_count == 0


class TestFeed:
    """feed/close contract."""

    def test_feed_after_close(self):
        mux = StreamMultiplexer("stderr")
        mux.close()
        with pytest.raises(RuntimeError, match="stderr"):
            mux.feed(b"x")

    def test_empty_chunk_ignored(self):
        mux = StreamMultiplexer()
        mux.feed(b"")
        assert mux.chunks == ()

    def test_close_idempotent(self):
        mux = StreamMultiplexer()
        mux.close()
        mux.close()
        assert mux.closed is True
