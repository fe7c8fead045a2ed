"""fetch() tests against a local aiohttp server."""

from __future__ import annotations

import io

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from procflow.config import configure
from procflow.fetch import FetchResponse, fetch
from procflow.runtime import IS_WINDOWS
from procflow.shell import Shell

BODY = b"line one\nline two\n"


async def _body(request: web.Request) -> web.Response:
    return web.Response(body=BODY)


async def _json(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "items": [1, 2]})


async def _echo(request: web.Request) -> web.Response:
    data = await request.read()
    return web.Response(body=request.method.encode() + b":" + data)


async def _missing(request: web.Request) -> web.Response:
    return web.Response(status=404, text="not here")


@pytest_asyncio.fixture
async def server():
    app = web.Application()
    app.router.add_get("/body", _body)
    app.router.add_get("/json", _json)
    app.router.add_post("/echo", _echo)
    app.router.add_get("/missing", _missing)
    async with TestServer(app) as test_server:
        yield test_server


@pytest.mark.integration
class TestFetch:
    """Reading responses."""

    @pytest.mark.asyncio
    async def test_read(self, server: TestServer):
        response = await fetch(str(server.make_url("/body")))

        assert isinstance(response, FetchResponse)
        assert response.status == 200
        assert response.ok is True
        assert await response.read() == BODY

    @pytest.mark.asyncio
    async def test_text_and_json(self, server: TestServer):
        text = await (await fetch(str(server.make_url("/body")))).text()
        data = await (await fetch(str(server.make_url("/json")))).json()

        assert text == BODY.decode()
        assert data == {"status": "ok", "items": [1, 2]}

    @pytest.mark.asyncio
    async def test_method_and_kwargs(self, server: TestServer):
        response = await fetch(str(server.make_url("/echo")), "post", data=b"payload")
        assert await response.read() == b"POST:payload"

    @pytest.mark.asyncio
    async def test_error_status_is_not_raised(self, server: TestServer):
        response = await fetch(str(server.make_url("/missing")))

        assert response.status == 404
        assert response.ok is False
        assert await response.text() == "not here"

    @pytest.mark.asyncio
    async def test_iter_chunks(self, server: TestServer):
        response = await fetch(str(server.make_url("/body")))
        chunks = [chunk async for chunk in response]
        assert b"".join(chunks) == BODY

    @pytest.mark.asyncio
    async def test_body_read_once(self, server: TestServer):
        response = await fetch(str(server.make_url("/body")))
        await response.read()

        with pytest.raises(RuntimeError, match="consumed"):
            await response.read()

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, server: TestServer):
        async with await fetch(str(server.make_url("/body"))) as response:
            assert response.status == 200
        assert response._session.closed

    @pytest.mark.asyncio
    async def test_fetch_record(self, server: TestServer):
        records: list[dict] = []
        configure(verbose=True, log=records.append)
        url = str(server.make_url("/body"))

        response = await fetch(url)
        await response.close()

        assert records == [{"kind": "fetch", "url": url, "method": "GET"}]


@pytest.mark.integration
@pytest.mark.skipif(IS_WINDOWS, reason="POSIX shell commands")
class TestFetchPipe:
    """Response bodies as process input."""

    @pytest.mark.asyncio
    async def test_pipe_into_template(self, server: TestServer):
        response = await fetch(str(server.make_url("/body")))
        output = await response.pipe("grep {}", "two")
        assert output == "line two"

    @pytest.mark.asyncio
    async def test_pipe_into_handle(self, server: TestServer, sh: Shell):
        response = await fetch(str(server.make_url("/body")))
        target = sh("wc -l")

        assert response.pipe(target) is target
        assert (await target).text().strip() == "2"

    @pytest.mark.asyncio
    async def test_pipe_into_sink(self, server: TestServer):
        response = await fetch(str(server.make_url("/body")))
        buffer = io.BytesIO()

        written = await response.pipe(buffer)
        assert written == len(BODY)
        assert buffer.getvalue() == BODY

    @pytest.mark.asyncio
    async def test_pipe_unsupported(self, server: TestServer):
        response = await fetch(str(server.make_url("/body")))
        with pytest.raises(TypeError):
            response.pipe(42)
        await response.close()
