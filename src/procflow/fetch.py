"""HTTP responses as process input.

    resp = await fetch("https://example.com/data.tar.gz")
    await resp.pipe("tar -xz -C {}", target_dir)

The response body is streamed; it is read at most once, either through
read()/text()/json(), iteration, or pipe().
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from .command import Command
from .log import log_event
from .pipeline import SinkWriter, is_sink

__all__ = ["fetch", "FetchResponse"]

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536
DEFAULT_TIMEOUT = 300.0


class FetchResponse:
    """A streamed HTTP response owning its client session."""

    def __init__(self, session: aiohttp.ClientSession, response: aiohttp.ClientResponse) -> None:
        self._session = session
        self._response = response
        self._consumed = False

    @property
    def status(self) -> int:
        return self._response.status

    @property
    def ok(self) -> bool:
        return self._response.status < 400

    @property
    def headers(self) -> Any:
        return self._response.headers

    @property
    def url(self) -> str:
        return str(self._response.url)

    def _consume(self) -> None:
        if self._consumed:
            raise RuntimeError("Response body has already been consumed")
        self._consumed = True

    async def read(self) -> bytes:
        self._consume()
        try:
            return await self._response.read()
        finally:
            await self.close()

    async def text(self, encoding: str | None = None) -> str:
        self._consume()
        try:
            return await self._response.text(encoding=encoding)
        finally:
            await self.close()

    async def json(self) -> Any:
        self._consume()
        try:
            return await self._response.json(content_type=None)
        finally:
            await self.close()

    async def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Stream the body; the session is closed once it is exhausted."""
        self._consume()
        try:
            async for chunk in self._response.content.iter_chunked(chunk_size):
                yield chunk
        finally:
            await self.close()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.iter_chunks()

    def pipe(self, target: Any, *args: Any) -> Any:
        """Feed the body into a process stdin or a byte sink.

        Args:
            target: A not yet started ProcessHandle, a Command, a command
                template (formatted with args) or a byte sink

        Returns:
            The target handle, or a task writing into the sink
        """
        from .process import ProcessHandle
        from .shell import sh

        if isinstance(target, (str, Command)):
            target = sh.with_options(halt=True)(target, *args)
        elif args:
            raise ValueError("Template arguments are only valid with a command template")

        if isinstance(target, ProcessHandle):
            target.input(self.iter_chunks())
            target.run()
            return target

        if is_sink(target):
            return asyncio.ensure_future(self._write_to(SinkWriter(target)))

        raise TypeError(f"Cannot pipe a response into {type(target).__name__}")

    async def _write_to(self, writer: SinkWriter) -> int:
        written = 0
        try:
            async for chunk in self.iter_chunks():
                await writer.write(chunk)
                written += len(chunk)
        finally:
            await writer.end()
        return written

    async def close(self) -> None:
        self._response.release()
        if not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> FetchResponse:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"FetchResponse(status={self.status}, url={self.url!r})"


async def fetch(
    url: str,
    method: str = "GET",
    *,
    timeout: float | None = DEFAULT_TIMEOUT,
    **kwargs: Any,
) -> FetchResponse:
    """Send an HTTP request and return the streamed response.

    Extra keyword arguments (headers, json, data, params, ...) are passed to
    aiohttp.ClientSession.request.

    Raises:
        aiohttp.ClientError: On connection failures
    """
    log_event({"kind": "fetch", "url": url, "method": method.upper()})

    session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout))
    try:
        response = await session.request(method.upper(), url, **kwargs)
    except BaseException:
        await session.close()
        raise

    logger.debug(f"{method.upper()} {url} -> HTTP {response.status}")
    return FetchResponse(session, response)
