"""Pipeline plumbing between processes, byte sources and byte sinks.

Process-to-process pipes are wired by ProcessHandle.pipe(); this module holds
the parts that talk to the outside world:

- iter_source(): normalize anything usable as stdin input into byte chunks
- SinkWriter: adapt a "write chunk / end" object (files, sockets, text streams)
- SinkPipe: awaitable forwarding one output channel of a process into a sink
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import io
import logging
import os
from collections.abc import AsyncIterator, Iterable
from typing import TYPE_CHECKING, Any, Generator

from .errors import ConfigError
from .multiplexer import StreamMultiplexer
from .output import ProcessOutput

if TYPE_CHECKING:
    from .process import ProcessHandle

__all__ = ["iter_source", "is_sink", "SinkWriter", "SinkPipe"]

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536

# Forwarding tasks of live SinkPipes.
_forwarding: set[asyncio.Task[None]] = set()


def _to_bytes(chunk: Any) -> bytes:
    if isinstance(chunk, str):
        return chunk.encode("utf-8")
    if isinstance(chunk, (bytes, bytearray, memoryview)):
        return bytes(chunk)
    raise ConfigError(f"Input chunks must be bytes or str, got {type(chunk).__name__}")


async def iter_source(source: Any) -> AsyncIterator[bytes]:
    """Yield the byte chunks of an input source.

    Accepted sources: bytes, str, ProcessOutput (its stdout), a
    StreamMultiplexer, a process handle (its stdout, replayed from the
    start), async iterables, binary file objects and plain iterables of
    bytes/str chunks.

    Raises:
        ConfigError: If the source type is not supported
    """
    if isinstance(source, (bytes, bytearray, memoryview, str)):
        yield _to_bytes(source)
        return
    if isinstance(source, ProcessOutput):
        yield source.stdout
        return

    stream = source if isinstance(source, StreamMultiplexer) else getattr(source, "stdout", None)
    if isinstance(stream, StreamMultiplexer):
        async for chunk in stream:
            yield chunk
        return

    if hasattr(source, "__aiter__"):
        async for chunk in source:
            yield _to_bytes(chunk)
        return

    if hasattr(source, "read"):
        while True:
            chunk = await asyncio.to_thread(source.read, CHUNK_SIZE)
            if not chunk:
                return
            yield _to_bytes(chunk)

    if isinstance(source, Iterable):
        for chunk in source:
            yield _to_bytes(chunk)
        return

    raise ConfigError(f"Unsupported input source: {type(source).__name__}")


def is_sink(target: Any) -> bool:
    """True for objects implementing the write-chunk contract."""
    return isinstance(target, os.PathLike) or callable(getattr(target, "write", None))


class SinkWriter:
    """Adapter giving any writable object an async write/end interface.

    - os.PathLike: the file is opened in binary mode and closed on end
    - asyncio.StreamWriter: drained after each write, EOF written on end
    - text streams (io.TextIOBase): chunks are decoded incrementally
    - objects with end(): end() is called (awaited if it returns an awaitable)
    - anything else with write(): flushed on end, never closed
    """

    def __init__(self, sink: Any) -> None:
        self._owned = isinstance(sink, os.PathLike)
        self._sink = open(sink, "wb") if self._owned else sink
        self._decoder = (
            codecs.getincrementaldecoder("utf-8")(errors="replace")
            if isinstance(self._sink, io.TextIOBase)
            else None
        )
        self._ended = False

    async def write(self, chunk: bytes) -> None:
        data: Any = self._decoder.decode(chunk) if self._decoder else chunk
        if not data:
            return
        result = self._sink.write(data)
        if inspect.isawaitable(result):
            await result
        drain = getattr(self._sink, "drain", None)
        if drain is not None and inspect.iscoroutinefunction(drain):
            await drain()

    async def end(self) -> None:
        if self._ended:
            return
        self._ended = True

        if self._decoder:
            tail = self._decoder.decode(b"", final=True)
            if tail:
                self._sink.write(tail)

        if self._owned:
            self._sink.close()
            return

        if isinstance(self._sink, asyncio.StreamWriter):
            if self._sink.can_write_eof():
                self._sink.write_eof()
            await self._sink.drain()
            return

        end = getattr(self._sink, "end", None)
        if callable(end):
            result = end()
            if inspect.isawaitable(result):
                await result
            return

        flush = getattr(self._sink, "flush", None)
        if callable(flush):
            flush()


class SinkPipe:
    """One output channel of a process forwarded into a byte sink.

    Awaiting a SinkPipe waits until the sink has been ended and resolves to
    the source process output (rejecting if the source rejects). Calling
    pipe() again fans the same channel out to another target.
    """

    def __init__(self, source: ProcessHandle, channel: str, sink: Any) -> None:
        self._source = source
        self._channel = channel
        self._stream: StreamMultiplexer = source.channel(channel)
        self._writer = SinkWriter(sink)
        self._task: asyncio.Task[None] | None = None
        try:
            self._start()
        except RuntimeError:
            # No running loop yet: forwarding starts on first await.
            pass

    def _start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._forward())
            _forwarding.add(self._task)
            self._task.add_done_callback(_forwarding.discard)
        return self._task

    async def _forward(self) -> None:
        written = 0
        try:
            async for chunk in self._stream:
                await self._writer.write(chunk)
                written += len(chunk)
        finally:
            await self._writer.end()
            logger.debug(f"Forwarded {written} bytes of {self._channel} to sink")

    async def _wait(self) -> ProcessOutput:
        await self._start()
        return await self._source

    def __await__(self) -> Generator[Any, None, ProcessOutput]:
        return self._wait().__await__()

    def pipe(self, target: Any, *args: Any, channel: str | None = None) -> Any:
        """Pipe the same source channel into another target."""
        return self._source.pipe(target, *args, channel=channel or self._channel)

    @property
    def source(self) -> ProcessHandle:
        return self._source

    def __repr__(self) -> str:
        return f"SinkPipe(source={self._source!r}, channel={self._channel})"
