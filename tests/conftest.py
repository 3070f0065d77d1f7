import asyncio
import socket

import pytest
import pytest_asyncio
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer


class RecordingWriter:
    """Collects what the proxy would send back to the inbound client."""

    def __init__(self):
        self.started = False
        self.finished = False
        self.status = None
        self.reason = None
        self.headers = None
        self.chunks = []

    async def start(self, status, headers, reason=None):
        self.started = True
        self.status = status
        self.headers = headers
        self.reason = reason

    async def write(self, chunk):
        self.chunks.append(chunk)

    async def finish(self):
        self.finished = True

    @property
    def body(self) -> bytes:
        return b"".join(self.chunks)


@pytest.fixture
def make_writer():
    return RecordingWriter


@pytest_asyncio.fixture
async def session():
    async with ClientSession(auto_decompress=False) as s:
        yield s


@pytest_asyncio.fixture
async def start_backend():
    """Start an aiohttp backend routing every path to ``handler``."""
    servers = []

    async def _start(handler) -> str:
        app = web.Application()
        app.router.add_route("*", "/{path:.*}", handler)
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return f"http://{server.host}:{server.port}"

    yield _start
    for server in servers:
        await server.close()


@pytest_asyncio.fixture
async def start_raw_backend():
    """Start a bare TCP backend driven by ``on_connection(reader, writer, n)``."""
    servers = []

    async def _start(on_connection) -> tuple[str, list[int]]:
        calls = []

        async def handle(reader, writer):
            calls.append(len(calls) + 1)
            try:
                await on_connection(reader, writer, len(calls))
            finally:
                writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        servers.append(server)
        port = server.sockets[0].getsockname()[1]
        return f"http://127.0.0.1:{port}", calls

    yield _start
    for server in servers:
        server.close()
        await server.wait_closed()


@pytest_asyncio.fixture
async def start_flaky_backend(start_raw_backend):
    """Backend that drops the first ``fail_first`` connections, then answers.

    With ``echo`` the answer carries the request body it received.
    """

    async def _start(
        fail_first: int, body: bytes = b"ok", status: int = 200, echo: bool = False
    ):
        async def on_connection(reader, writer, n):
            head = await reader.readuntil(b"\r\n\r\n")
            if n <= fail_first:
                return
            length = 0
            for line in head.split(b"\r\n"):
                name, _, value = line.partition(b":")
                if name.strip().lower() == b"content-length":
                    length = int(value)
            received = await reader.readexactly(length)
            payload = received if echo else body
            writer.write(
                f"HTTP/1.1 {status} OK\r\n"
                f"Content-Length: {len(payload)}\r\n"
                f"X-Attempt: {n}\r\n"
                "Connection: close\r\n\r\n".encode()
                + payload
            )
            await writer.drain()

        return await start_raw_backend(on_connection)

    return _start


@pytest.fixture
def dead_url():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"http://127.0.0.1:{port}"
