"""End-to-end lobby tests: real aiortc links brokered by the test signaling service."""

import asyncio
from dataclasses import dataclass

import pytest

from rtc_lobby import (
    ClientConnection,
    Error,
    ErrorKind,
    LobbyCreationOptions,
    LobbyHost,
    RTCLink,
    create_lobby,
    join_lobby,
    list_public_lobbies,
)

TIMEOUT = 10.0


async def _wait_until(predicate, timeout: float = TIMEOUT) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.05)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_host_and_client_exchange_messages(signaling, config):
    lobby = await create_lobby(signaling.host_url, LobbyCreationOptions(lobby_name="Potatoes"), config=config)
    assert isinstance(lobby, LobbyHost), lobby
    assert lobby.lobby_name == "Potatoes"
    assert lobby.public_lobby is True
    assert lobby.max_clients == 500

    connected = asyncio.Event()
    disconnected = asyncio.Event()
    disconnects = []

    def on_client_connect(client: ClientConnection) -> None:
        client.on_message = client.send

        def on_disconnect() -> None:
            disconnects.append(client.id)
            disconnected.set()

        client.on_disconnect = on_disconnect
        connected.set()

    lobby.on_client_connect = on_client_connect

    client = await join_lobby(signaling.client_url, "Potatoes", config=config)
    try:
        assert isinstance(client, RTCLink), client
        await asyncio.wait_for(connected.wait(), TIMEOUT)
        assert [c.id for c in lobby.clients] == [0]

        echoed = asyncio.Queue()
        client.on_message = echoed.put_nowait
        assert client.send({"n": 1}) is None
        assert await asyncio.wait_for(echoed.get(), TIMEOUT) == {"n": 1}
    finally:
        if isinstance(client, RTCLink):
            await client.disconnect()

    await asyncio.wait_for(disconnected.wait(), TIMEOUT)
    await asyncio.sleep(0.2)
    assert disconnects == [0]
    assert lobby.get_client(0) is None
    assert lobby.clients == []

    await lobby.close()


@pytest.mark.asyncio
async def test_join_any_public_lobby(signaling, config):
    lobby = await create_lobby(signaling.host_url, config=config)
    assert isinstance(lobby, LobbyHost), lobby
    try:
        client = await join_lobby(signaling.client_url, config=config)
        assert isinstance(client, RTCLink), client
        await client.disconnect()
    finally:
        await lobby.close()


@pytest.mark.asyncio
async def test_join_without_lobbies(signaling, config):
    result = await join_lobby(signaling.client_url, config=config)
    assert isinstance(result, Error)
    assert result.kind == ErrorKind.LOBBY_NOT_FOUND
    assert "no public lobby" in result.message


@pytest.mark.asyncio
async def test_join_unknown_lobby(signaling, config):
    result = await join_lobby(signaling.client_url, "there's-no-lobby-with-this-name", config=config)
    assert isinstance(result, Error)
    assert result.kind == ErrorKind.LOBBY_NOT_FOUND
    assert "there's-no-lobby-with-this-name" in result.message


@pytest.mark.asyncio
async def test_create_lobby_errors(signaling, refused_port, silent_server, config):
    invalid = await create_lobby(signaling.host_url + "invalidUrl", config=config)
    assert isinstance(invalid, Error)
    assert invalid.kind == ErrorKind.CONNECTION

    refused = await create_lobby(f"ws://127.0.0.1:{refused_port}/api/host", config=config)
    assert isinstance(refused, Error)
    assert refused.kind == ErrorKind.CONNECTION

    silent = await create_lobby(f"ws://{silent_server}/api/host", timeout=0.3, config=config)
    assert isinstance(silent, Error)
    assert silent.kind == ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_closing_lobby_fires_on_close(signaling, config):
    lobby = await create_lobby(signaling.host_url, config=config)
    assert isinstance(lobby, LobbyHost), lobby
    closed = asyncio.Event()
    lobby.on_close = closed.set

    await lobby.close()
    await asyncio.wait_for(closed.wait(), TIMEOUT)
    assert lobby.is_closed
    await _wait_until(lambda: lobby.lobby_name not in signaling.lobbies)


@pytest.mark.asyncio
async def test_links_survive_lobby_close(signaling, config):
    lobby = await create_lobby(signaling.host_url, LobbyCreationOptions(lobby_name="Pomelo"), config=config)
    connected = asyncio.Queue()
    lobby.on_client_connect = connected.put_nowait

    client = await join_lobby(signaling.client_url, "Pomelo", config=config)
    assert isinstance(client, RTCLink), client
    host_side = await asyncio.wait_for(connected.get(), TIMEOUT)
    await lobby.close()

    received = asyncio.Queue()
    host_side.on_message = received.put_nowait
    assert client.send("still here") is None
    assert await asyncio.wait_for(received.get(), TIMEOUT) == "still here"

    await client.disconnect()
    await host_side.disconnect()


@pytest.mark.asyncio
async def test_client_ids_and_disconnect_callbacks(signaling, config):
    lobby = await create_lobby(signaling.host_url, LobbyCreationOptions(lobby_name="321 Pomelo :O"), config=config)
    clients_to_disconnect = 2
    all_gone = asyncio.Event()
    host_disconnects = []

    def on_client_disconnect(client: ClientConnection) -> None:
        host_disconnects.append(client.id)
        if len(host_disconnects) == clients_to_disconnect:
            all_gone.set()

    lobby.on_client_disconnect = on_client_disconnect

    clients = await asyncio.gather(
        join_lobby(signaling.client_url, lobby.lobby_name, config=config),
        join_lobby(signaling.client_url, lobby.lobby_name, config=config),
    )
    await _wait_until(lambda: len(lobby.clients) == 2)
    assert sorted(c.id for c in lobby.clients) == [0, 1]
    await lobby.close()
    for client in clients:
        assert isinstance(client, RTCLink), client
        await client.disconnect()

    await asyncio.wait_for(all_gone.wait(), TIMEOUT)
    assert sorted(host_disconnects) == [0, 1]
    assert lobby.clients == []


@pytest.mark.asyncio
async def test_list_public_lobbies(signaling, config):
    lobbies = []
    try:
        for capacity in [1, 1, 2, 2, 2, 3, 4]:
            lobby = await create_lobby(signaling.host_url, LobbyCreationOptions(max_clients=capacity), config=config)
            assert isinstance(lobby, LobbyHost), lobby
            lobbies.append(lobby)
        private = await create_lobby(signaling.host_url, LobbyCreationOptions(public_lobby=False, max_clients=9), config=config)
        assert isinstance(private, LobbyHost), private
        lobbies.append(private)

        listed = await list_public_lobbies(signaling.client_url, maximum_lobbies=3, minimum_capacity=2, config=config)
        assert isinstance(listed, list), listed
        assert len(listed) == 3
        assert all(details.max_clients >= 2 and details.public_lobby for details in listed)
    finally:
        for lobby in lobbies:
            await lobby.close()


@dataclass
class Traffic:
    hosts: int = 3
    clients_per_host: int = 2
    created_lobbies: int = 0
    created_clients: int = 0
    received_messages: int = 0


async def _run_host(index: int, signaling, config, traffic: Traffic) -> None:
    name = f"traffic{index}" if index % 2 == 0 else None
    lobby = await create_lobby(signaling.host_url, LobbyCreationOptions(lobby_name=name), config=config)
    if isinstance(lobby, Error):
        return
    traffic.created_lobbies += 1

    def on_client_connect(client: ClientConnection) -> None:
        client.on_message = client.send

    lobby.on_client_connect = on_client_connect

    async def run_client(n: int) -> None:
        link = await join_lobby(signaling.client_url, lobby.lobby_name, config=config)
        if isinstance(link, Error):
            return
        traffic.created_clients += 1
        echoed = asyncio.Queue()
        link.on_message = echoed.put_nowait
        message = {"n": n}
        link.send(message)
        try:
            if await asyncio.wait_for(echoed.get(), TIMEOUT) == message:
                traffic.received_messages += 1
        finally:
            await link.disconnect()

    try:
        await asyncio.gather(*(run_client(n) for n in range(traffic.clients_per_host)))
    finally:
        await lobby.close()


@pytest.mark.asyncio
async def test_many_simultaneous_lobbies(signaling, config):
    traffic = Traffic()
    await asyncio.wait_for(
        asyncio.gather(*(_run_host(i, signaling, config, traffic) for i in range(traffic.hosts))),
        timeout=60,
    )
    assert traffic.created_lobbies == traffic.hosts
    assert traffic.created_clients == traffic.hosts * traffic.clients_per_host
    assert traffic.received_messages == traffic.hosts * traffic.clients_per_host
