import asyncio
import socket
import typing as t

import pytest
import pytest_asyncio
from aiohttp import web
from signaling_server import SignalingService

from rtc_lobby.config import LobbyConfig


def _get_free_port() -> int:
    """Get a free port using socket binding."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _serve(app: web.Application) -> t.Tuple[web.AppRunner, int]:
    runner = web.AppRunner(app)
    await runner.setup()
    port = _get_free_port()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    return runner, port


@pytest.fixture(name="config")
def config_fixture() -> LobbyConfig:
    # No ICE servers: loopback tests must not depend on a public STUN server.
    return LobbyConfig(timeout=10.0, answer_timeout=10.0, ice_servers=[])


@pytest_asyncio.fixture(name="signaling")
async def signaling_fixture() -> t.AsyncIterator[SignalingService]:
    """A running signaling service on a free local port."""
    service = SignalingService()
    runner, port = await _serve(service.app)
    service.host_url = f"ws://127.0.0.1:{port}/api/host"
    service.client_url = f"http://127.0.0.1:{port}/api/client"
    try:
        yield service
    finally:
        await runner.cleanup()


@pytest_asyncio.fixture(name="silent_server")
async def silent_server_fixture() -> t.AsyncIterator[str]:
    """A TCP server that accepts connections and never answers.

    Yields its ``host:port``.
    """
    writers = []

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writers.append(writer)
        await reader.read()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield f"127.0.0.1:{port}"
    finally:
        for writer in writers:
            writer.close()
        server.close()
        await server.wait_closed()


@pytest_asyncio.fixture(name="static_server")
async def static_server_fixture() -> t.AsyncIterator[t.Callable[..., t.Awaitable[str]]]:
    """Factory for an HTTP endpoint that always replies with the same body."""
    runners = []

    async def start(body: str, content_type: str = "application/json") -> str:
        async def handler(request: web.Request) -> web.Response:
            return web.Response(text=body, content_type=content_type)

        app = web.Application()
        app.router.add_post("/api/client", handler)
        runner, port = await _serve(app)
        runners.append(runner)
        return f"http://127.0.0.1:{port}/api/client"

    try:
        yield start
    finally:
        for runner in runners:
            await runner.cleanup()


@pytest.fixture(name="refused_port")
def refused_port_fixture() -> int:
    """A local port with nothing listening on it."""
    return _get_free_port()
