from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Optional

from .config import LobbyConfig
from .errors import Error
from .logging_config import setup_logging
from .net.protocol import LobbyCreationOptions
from .rtc.lobby import ClientConnection, create_lobby, join_lobby, list_public_lobbies


async def run_host(args: argparse.Namespace, config: LobbyConfig) -> int:
	options = LobbyCreationOptions(
		lobby_name=args.lobby_name,
		public_lobby=not args.private,
		max_clients=args.max_clients,
	)
	lobby = await create_lobby(args.server_url or config.host_url, options, config=config)
	if isinstance(lobby, Error):
		print(f"Failed to create lobby: {lobby}")
		return 1

	closed = asyncio.Event()

	def on_client_connect(client: ClientConnection) -> None:
		print(f"Client {client.id} connected")

		def on_message(message: Any) -> None:
			print(f"Client {client.id}: {json.dumps(message)}")
			client.send(message)

		client.on_message = on_message

	def on_client_disconnect(client: ClientConnection) -> None:
		print(f"Client {client.id} disconnected")

	lobby.on_client_connect = on_client_connect
	lobby.on_client_disconnect = on_client_disconnect
	lobby.on_close = closed.set

	print(f"Lobby '{lobby.lobby_name}' open (public={lobby.public_lobby}, max_clients={lobby.max_clients})")
	try:
		await closed.wait()
	finally:
		await lobby.close()
		for client in lobby.clients:
			await client.disconnect()
	return 0


async def run_join(args: argparse.Namespace, config: LobbyConfig) -> int:
	link = await join_lobby(args.server_url or config.client_url, args.lobby_name, config=config)
	if isinstance(link, Error):
		print(f"Failed to join lobby: {link}")
		return 1

	try:
		message = json.loads(args.message)
	except json.JSONDecodeError:
		message = args.message

	echoed: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
	link.on_message = lambda msg: echoed.done() or echoed.set_result(msg)

	error = link.send(message)
	if error is not None:
		print(f"Failed to send: {error}")
		await link.disconnect()
		return 1

	try:
		reply = await asyncio.wait_for(echoed, timeout=config.timeout)
	except asyncio.TimeoutError:
		print("No reply from the host")
		return 1
	finally:
		await link.disconnect()

	print(json.dumps(reply))
	return 0


async def run_list(args: argparse.Namespace, config: LobbyConfig) -> int:
	lobbies = await list_public_lobbies(
		args.server_url or config.client_url,
		maximum_lobbies=args.maximum,
		minimum_capacity=args.minimum_capacity,
		config=config,
	)
	if isinstance(lobbies, Error):
		print(f"Failed to list lobbies: {lobbies}")
		return 1
	for lobby in lobbies:
		print(f"{lobby.lobby_name}\t{lobby.client_count}/{lobby.max_clients}")
	return 0


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="rtc-lobby host/client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use RTC_LOBBY_LOG_LEVEL.",
	)
	parser.add_argument(
		"--server-url",
		default=None,
		help="Signaling URL (defaults to RTC_LOBBY_HOST_URL or RTC_LOBBY_CLIENT_URL)",
	)
	sub = parser.add_subparsers(dest="command", required=True)

	host = sub.add_parser("host", help="Create a lobby and echo client messages")
	host.add_argument("--lobby-name", default=None)
	host.add_argument("--private", action="store_true", help="Do not list the lobby publicly")
	host.add_argument("--max-clients", type=int, default=None)

	join = sub.add_parser("join", help="Join a lobby and send one message")
	join.add_argument("--lobby-name", default=None, help="Lobby to join (any public lobby if omitted)")
	join.add_argument("--message", default='{"n":1}')

	listing = sub.add_parser("list", help="List public lobbies")
	listing.add_argument("--maximum", type=int, default=10)
	listing.add_argument("--minimum-capacity", type=int, default=1)
	return parser


def main(argv: Optional[list[str]] = None) -> int:
	args = build_parser().parse_args(argv)

	setup_logging(args.log_level)
	config = LobbyConfig.from_env()

	runners = {"host": run_host, "join": run_join, "list": run_list}
	try:
		return asyncio.run(runners[args.command](args, config))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
