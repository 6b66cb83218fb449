"""Lobby host/client composition on top of links and signaling."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from aiortc import RTCDataChannel, RTCPeerConnection

from ..config import LobbyConfig
from ..errors import Error, run_callback
from ..net.protocol import LobbyCreationOptions, LobbyDetails
from ..net.signaling_client import ServerHost, connect_client, create_server_host_connection, request_public_lobbies
from .link import RTCLink, create_link_request, create_link_response


logger = logging.getLogger(__name__)


ClientId = int
ClientCallback = Callable[["ClientConnection"], Optional[Awaitable[None]]]


class ClientConnection(RTCLink):
    """A link to one joined client, as seen by the lobby host."""

    def __init__(self, client_id: ClientId, host: "LobbyHost", connection: RTCPeerConnection, channel: RTCDataChannel):
        super().__init__(connection, channel)
        self.id = client_id
        self._host = host

    async def _after_disconnect(self) -> None:
        await self._host._remove_client(self)


class LobbyHost:
    """A registered lobby and the clients that joined it.

    Closing the lobby stops new joins, but links with clients that already
    joined stay open. The lobby also closes if the signaling service drops
    the control connection.
    """

    def __init__(self, config: LobbyConfig):
        self.on_client_connect: Optional[ClientCallback] = None
        self.on_client_disconnect: Optional[ClientCallback] = None
        self.on_close: Optional[Callable[[], Optional[Awaitable[None]]]] = None

        self._config = config
        self._server: Optional[ServerHost] = None
        self._clients: Dict[ClientId, ClientConnection] = {}
        self._last_client_id: ClientId = 0
        self._pending: Set[asyncio.Task[None]] = set()
        self._closed = False

    # Cached lobby details, refreshed by the signaling service.

    @property
    def details(self) -> LobbyDetails:
        assert self._server is not None
        return self._server.lobby_details

    @property
    def lobby_name(self) -> str:
        return self.details.lobby_name

    @property
    def public_lobby(self) -> bool:
        return self.details.public_lobby

    @property
    def max_clients(self) -> int:
        return self.details.max_clients

    @property
    def client_count(self) -> int:
        return self.details.client_count

    @property
    def clients(self) -> List[ClientConnection]:
        return list(self._clients.values())

    @property
    def is_closed(self) -> bool:
        return self._closed

    def get_client(self, client_id: ClientId) -> Optional[ClientConnection]:
        return self._clients.get(client_id)

    async def update_lobby_details(self, timeout: Optional[float] = None, **changes: Any) -> Union[LobbyDetails, Error]:
        assert self._server is not None
        return await self._server.update_lobby_details(
            self._config.timeout if timeout is None else timeout, **changes
        )

    async def close(self) -> None:
        if self._server is not None:
            await self._server.close()

    def _next_client_id(self) -> ClientId:
        client_id = self._last_client_id
        self._last_client_id += 1
        return client_id

    def _make_client(self, connection: RTCPeerConnection, channel: RTCDataChannel) -> ClientConnection:
        return ClientConnection(self._next_client_id(), self, connection, channel)

    async def _create_answer(self, offer: str) -> Union[str, Error]:
        response = await create_link_response(
            offer,
            self._config.answer_timeout,
            rtc_config=self._config.rtc_configuration(),
            link_factory=self._make_client,
        )
        if isinstance(response, Error):
            logger.info("lobby answer failed: %s", response)
            return response

        task = asyncio.create_task(self._await_client(response.link), name="lobby-await-client")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return response.answer

    async def _await_client(self, link_result: Awaitable[Union[RTCLink, Error]]) -> None:
        link = await link_result
        if isinstance(link, Error):
            logger.info("lobby client did not connect: %s", link)
            return
        assert isinstance(link, ClientConnection)
        if link.disconnected:
            return
        self._clients[link.id] = link
        logger.info("lobby client connected id=%s lobby=%s", link.id, self.lobby_name)
        await run_callback(self.on_client_connect, link, label="lobby on_client_connect")

    async def _remove_client(self, client: ClientConnection) -> None:
        if self._clients.get(client.id) is not client:
            return
        logger.info("lobby client disconnected id=%s", client.id)
        await run_callback(self.on_client_disconnect, client, label="lobby on_client_disconnect")
        self._clients.pop(client.id, None)

    async def _handle_server_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("lobby closed")
        await run_callback(self.on_close, label="lobby on_close")


LobbyClient = RTCLink


async def create_lobby(
    url: Optional[str] = None,
    options: Optional[LobbyCreationOptions] = None,
    timeout: Optional[float] = None,
    config: Optional[LobbyConfig] = None,
) -> Union[LobbyHost, Error]:
    config = config or LobbyConfig.from_env()
    url = url or config.host_url
    options = options or LobbyCreationOptions()
    timeout = config.timeout if timeout is None else timeout

    lobby = LobbyHost(config)
    server = await create_server_host_connection(url, options, timeout, create_answer=lobby._create_answer)
    if isinstance(server, Error):
        return server

    lobby._server = server
    server.on_close = lobby._handle_server_close
    if server.is_closed:
        await lobby._handle_server_close()
    return lobby


async def join_lobby(
    url: Optional[str] = None,
    lobby_name: Optional[str] = None,
    timeout: Optional[float] = None,
    config: Optional[LobbyConfig] = None,
) -> Union[LobbyClient, Error]:
    """Join `lobby_name`, or any public lobby when no name is given.

    `timeout` bounds the whole join: offer creation, the signaling round trip
    and the data channel opening.
    """

    config = config or LobbyConfig.from_env()
    url = url or config.client_url
    timeout = config.timeout if timeout is None else timeout

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    request = await create_link_request(config.rtc_configuration())
    if isinstance(request, Error):
        return request

    answer = await connect_client(url, request.offer, lobby_name, deadline - loop.time())
    if isinstance(answer, Error):
        await request.close()
        return answer

    return await request.create_link(answer, deadline - loop.time())


async def list_public_lobbies(
    url: Optional[str] = None,
    maximum_lobbies: int = 10,
    minimum_capacity: int = 1,
    timeout: Optional[float] = None,
    config: Optional[LobbyConfig] = None,
) -> Union[List[LobbyDetails], Error]:
    config = config or LobbyConfig.from_env()
    url = url or config.client_url
    timeout = config.timeout if timeout is None else timeout
    return await request_public_lobbies(url, maximum_lobbies, minimum_capacity, timeout)
