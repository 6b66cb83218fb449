"""Signaling service client.

Hosts keep a persistent WebSocket to the service (`ServerHost`). Joining
clients and lobby listings use one-shot HTTP requests. This module knows
nothing about aiortc: offers and answers are opaque strings here.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import aiohttp
import websockets

from ..codec import parse, stringify
from ..errors import Error, ErrorKind, TimeoutHandle, create_timeout, display_any, run_callback
from . import protocol
from .protocol import LobbyCreationOptions, LobbyDetails, ProtocolError


logger = logging.getLogger(__name__)


CreateAnswer = Callable[[str], Awaitable[Union[str, Error]]]
CloseCallback = Callable[[], Optional[Awaitable[None]]]


def _error_from_message(msg: Dict[str, Any], lobby_name: Optional[str] = None) -> Error:
	kind = msg.get("error")
	detail = msg.get("message")
	if kind == protocol.LOBBY_ALREADY_EXISTS:
		text = f"A lobby named '{lobby_name}' already exists" if lobby_name else "The lobby already exists"
		return Error(ErrorKind.LOBBY_ALREADY_EXISTS, str(detail or text))
	if kind == protocol.LOBBY_NOT_FOUND:
		return Error(ErrorKind.LOBBY_NOT_FOUND, str(detail or "The lobby was not found"))
	return Error(ErrorKind.INVALID_DATA, f"The server rejected the message ({kind}: {detail})")


async def _open_websocket(url: str, timeout: float) -> Union[Any, Error]:
	"""Connect to `url`, racing the handshake against `timeout`."""

	async def _connect() -> Any:
		return await websockets.connect(url, open_timeout=None)

	task = asyncio.create_task(_connect(), name="signaling-connect")
	handle: TimeoutHandle[Any] = create_timeout(
		timeout,
		f"Couldn't connect with the server '{url}'",
		on_timeout=task.cancel,
	)

	def _on_done(t: asyncio.Task[Any]) -> None:
		if t.cancelled():
			return
		exc = t.exception()
		if exc is not None:
			logger.info("signaling connect failed url=%s error=%s", url, exc)
			handle.resolve(Error(ErrorKind.CONNECTION, f"Couldn't connect with the server '{url}' ({exc})"))
			return
		ws = t.result()
		if not handle.resolve(ws):
			# The deadline already won; don't leak the late socket.
			asyncio.ensure_future(ws.close())

	task.add_done_callback(_on_done)
	return await handle.result


class ServerHost:
	"""The host's control channel to the signaling service for one lobby."""

	def __init__(self, url: str, ws: Any, create_answer: Optional[CreateAnswer] = None):
		self.url = url
		self.create_answer = create_answer
		self.on_close: Optional[CloseCallback] = None

		self._ws = ws
		self._details: Optional[LobbyDetails] = None
		self._requested_name: Optional[str] = None
		self._creation: Optional[TimeoutHandle[LobbyDetails]] = None
		self._details_waiters: List[TimeoutHandle[LobbyDetails]] = []
		self._tasks: Set[asyncio.Task[None]] = set()
		self._send_lock = asyncio.Lock()
		self._closed = False
		self._recv_task = asyncio.create_task(self._recv_loop(), name="signaling-recv")

	@property
	def lobby_details(self) -> LobbyDetails:
		if self._details is None:
			raise RuntimeError("The lobby has not been created yet")
		return self._details

	@property
	def is_closed(self) -> bool:
		return self._closed

	async def send(self, payload: Dict[str, Any]) -> Optional[Error]:
		raw = stringify(payload)
		if isinstance(raw, Error):
			return raw
		if self._closed:
			return Error(ErrorKind.CONNECTION, "The signaling connection is closed")
		logger.debug("signaling send type=%s", payload.get("type"))
		try:
			async with self._send_lock:
				await self._ws.send(raw)
		except websockets.ConnectionClosed as e:
			return Error(ErrorKind.CONNECTION, f"The signaling connection is closed ({e})")
		return None

	async def create_lobby(self, options: LobbyCreationOptions, timeout: float) -> Union[LobbyDetails, Error]:
		self._requested_name = options.lobby_name
		handle: TimeoutHandle[LobbyDetails] = create_timeout(
			timeout, "The server has not answered the 'create-lobby' request"
		)
		self._creation = handle
		logger.info("signaling create-lobby name=%s public=%s", options.lobby_name, options.public_lobby)
		error = await self.send(protocol.make_create_lobby(options))
		if error is not None:
			handle.resolve(Error(ErrorKind.INVALID_DATA, f"Lobby creation options are invalid {display_any(options)} ({error.message})"))
		result = await handle.result
		self._creation = None
		return result

	async def update_lobby_details(
		self,
		timeout: float,
		*,
		lobby_name: Optional[str] = None,
		public_lobby: Optional[bool] = None,
		max_clients: Optional[int] = None,
		client_count: Optional[int] = None,
	) -> Union[LobbyDetails, Error]:
		"""Ask the service to change the lobby details.

		Resolves with the details the service pushes back next. If the
		timeout expires the update may still be applied later.
		"""

		if max_clients is not None:
			max_clients = protocol.clamp_max_clients(max_clients)
		details = self.lobby_details.merged(
			lobby_name=lobby_name,
			public_lobby=public_lobby,
			max_clients=max_clients,
			client_count=client_count,
		)
		handle: TimeoutHandle[LobbyDetails] = create_timeout(timeout, "The server has not answered")
		self._details_waiters.append(handle)
		error = await self.send(protocol.make_lobby_details(details))
		if error is not None:
			handle.resolve(error)
		return await handle.result

	async def close(self) -> None:
		logger.info("signaling disconnect url=%s", self.url)
		try:
			await self._ws.close()
		except Exception as e:
			logger.debug("signaling close failed: %s", e)
		if self._recv_task is not asyncio.current_task():
			await asyncio.gather(self._recv_task, return_exceptions=True)

	async def _recv_loop(self) -> None:
		ws = self._ws
		logger.debug("signaling recv loop started")

		try:
			async for raw in ws:
				await self._dispatch(raw)
		except websockets.ConnectionClosed as e:
			logger.info("signaling connection closed: %s", e)
		except asyncio.CancelledError:
			pass
		except Exception:
			logger.exception("signaling recv loop crashed")
		finally:
			self._closed = True
			logger.debug("signaling recv loop stopped")
			if self._creation is not None:
				self._creation.resolve(Error(ErrorKind.CONNECTION, "The server closed the connection"))
			await run_callback(self.on_close, label="signaling on_close callback")

	async def _dispatch(self, raw: Union[str, bytes]) -> None:
		msg = parse(raw)
		creation = self._creation
		if creation is not None and creation.done:
			creation = None
		if isinstance(msg, Error):
			if creation is not None:
				creation.resolve(Error(ErrorKind.DESERIALIZE, "The server response can't be deserialized"))
			else:
				logger.warning("signaling invalid frame ignored: %s", msg.message)
			return

		mtype = protocol.message_type(msg)

		if creation is not None:
			if mtype == protocol.LOBBY_DETAILS:
				try:
					self._details = LobbyDetails.from_dict(msg.get("details"))
				except ProtocolError as e:
					creation.resolve(Error(ErrorKind.INVALID_DATA, e.message))
					return
				logger.info("signaling lobby created name=%s", self._details.lobby_name)
				creation.resolve(self._details)
			elif mtype == protocol.ERROR:
				creation.resolve(_error_from_message(msg, self._requested_name))
			else:
				logger.debug("signaling ignoring type=%s before lobby creation", mtype)
			return

		if mtype == protocol.JOIN_REQUEST:
			logger.info("signaling join-request request_id=%s", msg.get("requestId"))
			task = asyncio.create_task(self._handle_join_request(msg), name="signaling-join-request")
			self._tasks.add(task)
			task.add_done_callback(self._tasks.discard)
			return

		if mtype == protocol.LOBBY_DETAILS:
			try:
				details = LobbyDetails.from_dict(msg.get("details"))
			except ProtocolError as e:
				logger.warning("signaling invalid lobby-details ignored: %s", e.message)
				return
			self._details = details
			logger.info("signaling lobby-details name=%s clients=%s/%s", details.lobby_name, details.client_count, details.max_clients)
			waiters, self._details_waiters = self._details_waiters, []
			for waiter in waiters:
				waiter.resolve(details)
			return

		if mtype == protocol.ERROR:
			logger.warning("signaling error=%s message=%s", msg.get("error"), msg.get("message"))
			return

		logger.warning("signaling unknown type=%s", mtype)

	async def _handle_join_request(self, msg: Dict[str, Any]) -> None:
		offer = msg.get("offer")
		request_id = msg.get("requestId")
		if not isinstance(offer, str):
			logger.warning("signaling join-request without offer ignored")
			return
		if self.create_answer is None:
			logger.warning("signaling join-request ignored: no answer handler")
			return
		try:
			answer = await self.create_answer(offer)
		except Exception:
			logger.exception("signaling answer handler failed")
			return
		if isinstance(answer, Error):
			logger.warning("signaling join-request rejected: %s", answer)
			return
		error = await self.send(protocol.make_join_invitation(answer, request_id))
		if error is not None:
			logger.warning("signaling join-invitation not sent: %s", error)


async def create_server_host_connection(
	url: str,
	options: LobbyCreationOptions,
	timeout: float,
	create_answer: Optional[CreateAnswer] = None,
) -> Union[ServerHost, Error]:
	logger.info("signaling connect url=%s", url)
	ws = await _open_websocket(url, timeout)
	if isinstance(ws, Error):
		return ws

	server = ServerHost(url, ws, create_answer)
	details = await server.create_lobby(options, timeout)
	if isinstance(details, Error):
		await server.close()
		return details
	return server


async def _request(url: str, payload: Dict[str, Any], timeout: float) -> Union[Any, Error]:
	"""One-shot POST of `payload`, returning the parsed response body."""

	body = stringify(payload)
	if isinstance(body, Error):
		return body

	async def _fetch() -> Union[str, Error]:
		try:
			async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None)) as session:
				async with session.post(url, data=body, headers={"Content-Type": "application/json"}) as response:
					if response.content_type not in ("application/json", "text/plain"):
						return Error(
							ErrorKind.CONNECTION,
							f"The server '{url}' returned a non-text response (status {response.status}, {response.content_type})",
						)
					return await response.text()
		except (aiohttp.ClientError, OSError, UnicodeDecodeError) as e:
			return Error(ErrorKind.CONNECTION, f"Couldn't reach the server '{url}' ({e})")

	task = asyncio.create_task(_fetch(), name="signaling-request")
	handle: TimeoutHandle[str] = create_timeout(
		timeout,
		f"The server '{url}' has not responded",
		on_timeout=task.cancel,
	)

	def _on_done(t: asyncio.Task[Union[str, Error]]) -> None:
		if t.cancelled():
			handle.resolve(Error(ErrorKind.CONNECTION, f"The request to '{url}' was aborted"))
			return
		exc = t.exception()
		if exc is not None:
			handle.resolve(Error(ErrorKind.CONNECTION, f"Couldn't reach the server '{url}' ({exc})"))
			return
		handle.resolve(t.result())

	task.add_done_callback(_on_done)
	text = await handle.result
	if isinstance(text, Error):
		return text

	message = parse(text)
	if isinstance(message, Error):
		return Error(
			ErrorKind.DESERIALIZE,
			"The server returned data that can't be deserialized "
			"(The data was not serialized correctly or has been corrupted)",
		)
	return message


def _unexpected(message: Any) -> Error:
	shown = stringify(message)
	if isinstance(shown, Error):
		shown = display_any(message)
	return Error(ErrorKind.INVALID_DATA, f"The server returned unexpected data (Data received: {shown})")


async def connect_client(
	url: str,
	offer: str,
	lobby_name: Optional[str] = None,
	timeout: float = 5.0,
) -> Union[str, Error]:
	"""Send a join request for `offer` and return the host's answer.

	Without `lobby_name` the service picks any public lobby.
	"""

	logger.info("signaling join-request url=%s lobby=%s", url, lobby_name)
	message = await _request(url, protocol.make_join_request(offer, lobby_name), timeout)
	if isinstance(message, Error):
		return message

	mtype = protocol.message_type(message)
	if mtype == protocol.JOIN_INVITATION and isinstance(message.get("answer"), str):
		return message["answer"]

	if mtype == protocol.ERROR and message.get("error") == protocol.LOBBY_NOT_FOUND:
		if lobby_name is None:
			return Error(ErrorKind.LOBBY_NOT_FOUND, "There is no public lobby available")
		return Error(ErrorKind.LOBBY_NOT_FOUND, f"There is no lobby named '{lobby_name}'")

	return _unexpected(message)


async def request_public_lobbies(
	url: str,
	maximum_lobbies: int,
	minimum_capacity: int,
	timeout: float = 5.0,
) -> Union[List[LobbyDetails], Error]:
	logger.info("signaling list-lobbies url=%s max=%s min_capacity=%s", url, maximum_lobbies, minimum_capacity)
	message = await _request(url, protocol.make_list_lobbies(maximum_lobbies, minimum_capacity), timeout)
	if isinstance(message, Error):
		return message

	mtype = protocol.message_type(message)
	if mtype != protocol.LOBBY_LIST or not isinstance(message.get("lobbies"), list):
		return _unexpected(message)

	lobbies: List[LobbyDetails] = []
	for item in message["lobbies"]:
		try:
			details = LobbyDetails.from_dict(item)
		except ProtocolError:
			return _unexpected(message)
		if details.public_lobby and details.free_slots >= minimum_capacity:
			lobbies.append(details)
	return lobbies[: max(0, maximum_lobbies)]
