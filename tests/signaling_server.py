"""In-process signaling service used by the tests.

Hosts connect to ``/api/host`` over WebSocket and clients POST to
``/api/client``, mirroring the production service's routes and messages.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from aiohttp import WSMsgType, web

from rtc_lobby.net import protocol
from rtc_lobby.net.protocol import LobbyDetails


@dataclass
class HostedLobby:
    ws: web.WebSocketResponse
    details: LobbyDetails
    pending: Dict[str, asyncio.Future] = field(default_factory=dict)


class SignalingService:
    def __init__(self, join_timeout: float = 10.0):
        self.join_timeout = join_timeout
        self.lobbies: Dict[str, HostedLobby] = {}
        self.join_requests = 0
        self._names = itertools.count()
        self.host_url = ""
        self.client_url = ""

        self.app = web.Application()
        self.app.router.add_get("/api/host", self.handle_host)
        self.app.router.add_post("/api/client", self.handle_client)

    def _random_name(self) -> str:
        while True:
            name = f"lobby-{next(self._names)}"
            if name not in self.lobbies:
                return name

    async def handle_host(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        first = await ws.receive()
        if first.type != WSMsgType.TEXT:
            await ws.close()
            return ws
        msg = json.loads(first.data)
        if protocol.message_type(msg) != protocol.CREATE_LOBBY:
            await ws.send_json(protocol.make_error(protocol.INVALID_MESSAGE))
            await ws.close()
            return ws

        name = msg.get("lobbyName") or self._random_name()
        if name in self.lobbies:
            await ws.send_json(protocol.make_error(protocol.LOBBY_ALREADY_EXISTS))
            await ws.close()
            return ws

        lobby = HostedLobby(
            ws=ws,
            details=LobbyDetails(
                lobby_name=name,
                public_lobby=bool(msg.get("publicLobby", True)),
                max_clients=int(msg["maxClients"]),
            ),
        )
        self.lobbies[name] = lobby
        await ws.send_json(protocol.make_lobby_details(lobby.details))

        try:
            async for frame in ws:
                if frame.type != WSMsgType.TEXT:
                    break
                await self._handle_host_message(lobby, json.loads(frame.data))
        finally:
            if self.lobbies.get(lobby.details.lobby_name) is lobby:
                del self.lobbies[lobby.details.lobby_name]
            for future in lobby.pending.values():
                future.cancel()
        return ws

    async def _handle_host_message(self, lobby: HostedLobby, msg: Any) -> None:
        mtype = protocol.message_type(msg)
        if mtype == protocol.JOIN_INVITATION:
            future = lobby.pending.pop(msg.get("requestId"), None)
            if future is not None and not future.done():
                future.set_result(msg)
        elif mtype == protocol.LOBBY_DETAILS:
            details = LobbyDetails.from_dict(msg["details"])
            old_name = lobby.details.lobby_name
            if details.lobby_name != old_name:
                if details.lobby_name in self.lobbies:
                    details = details.merged(lobby_name=old_name)
                else:
                    del self.lobbies[old_name]
                    self.lobbies[details.lobby_name] = lobby
            lobby.details = details
            await lobby.ws.send_json(protocol.make_lobby_details(details))

    async def handle_client(self, request: web.Request) -> web.Response:
        try:
            msg = await request.json()
        except json.JSONDecodeError:
            return web.json_response(protocol.make_error(protocol.INVALID_MESSAGE))

        mtype = protocol.message_type(msg)
        if mtype == protocol.JOIN_REQUEST:
            return web.json_response(await self._join(msg))
        if mtype == protocol.LIST_LOBBIES:
            lobbies = [
                lobby.details
                for lobby in self.lobbies.values()
                if lobby.details.public_lobby and lobby.details.free_slots >= int(msg.get("minimumCapacity", 1))
            ]
            return web.json_response(protocol.make_lobby_list(lobbies[: int(msg.get("maximumLobbies", 10))]))
        return web.json_response(protocol.make_error(protocol.INVALID_MESSAGE))

    async def _join(self, msg: Dict[str, Any]) -> Dict[str, Any]:
        self.join_requests += 1
        lobby_name: Optional[str] = msg.get("lobbyName")
        if lobby_name is None:
            lobby = next((l for l in self.lobbies.values() if l.details.public_lobby), None)
        else:
            lobby = self.lobbies.get(lobby_name)
        if lobby is None:
            return protocol.make_error(protocol.LOBBY_NOT_FOUND)

        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        lobby.pending[request_id] = future
        await lobby.ws.send_json(protocol.make_join_request(msg["offer"], lobby.details.lobby_name, request_id))
        try:
            invitation = await asyncio.wait_for(future, self.join_timeout)
        except asyncio.TimeoutError:
            lobby.pending.pop(request_id, None)
            return protocol.make_error(protocol.LOBBY_NOT_FOUND)
        except asyncio.CancelledError:
            # The host went away while the client was waiting.
            if not future.cancelled():
                raise
            return protocol.make_error(protocol.LOBBY_NOT_FOUND)
        return protocol.make_join_invitation(invitation["answer"])
