"""Signaling protocol helpers.

The signaling service exchanges JSON objects tagged by a "type" field: text
frames on the host's WebSocket, and request/response bodies for joining
clients.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, TypedDict


# Message type constants
CREATE_LOBBY = "create-lobby"
JOIN_REQUEST = "join-request"
JOIN_INVITATION = "join-invitation"
LOBBY_DETAILS = "lobby-details"
LIST_LOBBIES = "list-lobbies"
LOBBY_LIST = "lobby-list"
ERROR = "error"

# Error sub-kinds carried in the "error" field of an ERROR message
LOBBY_NOT_FOUND = "lobbyNotFound"
LOBBY_ALREADY_EXISTS = "lobbyAlreadyExists"
INVALID_MESSAGE = "invalidMessage"

MAX_CLIENTS_LIMIT = 500


class LobbyDetailsDict(TypedDict):
	lobbyName: str
	publicLobby: bool
	maxClients: int
	clientCount: int


@dataclass(frozen=True)
class LobbyDetails:
	lobby_name: str
	public_lobby: bool
	max_clients: int
	client_count: int = 0

	@property
	def free_slots(self) -> int:
		return self.max_clients - self.client_count

	def to_dict(self) -> LobbyDetailsDict:
		return {
			"lobbyName": self.lobby_name,
			"publicLobby": self.public_lobby,
			"maxClients": self.max_clients,
			"clientCount": self.client_count,
		}

	@classmethod
	def from_dict(cls, obj: Any) -> "LobbyDetails":
		if not isinstance(obj, dict):
			raise ProtocolError(f"lobby details must be an object, got {type(obj).__name__}")
		try:
			return cls(
				lobby_name=str(obj["lobbyName"]),
				public_lobby=bool(obj["publicLobby"]),
				max_clients=int(obj["maxClients"]),
				client_count=int(obj.get("clientCount", 0)),
			)
		except (KeyError, TypeError, ValueError) as e:
			raise ProtocolError(f"invalid lobby details: {e}") from e

	def merged(self, **changes: Any) -> "LobbyDetails":
		return replace(self, **{k: v for k, v in changes.items() if v is not None})


@dataclass
class LobbyCreationOptions:
	lobby_name: Optional[str] = None
	public_lobby: bool = True
	max_clients: Optional[int] = None


def clamp_max_clients(max_clients: Optional[int]) -> int:
	if not max_clients or max_clients <= 0 or max_clients > MAX_CLIENTS_LIMIT:
		return MAX_CLIENTS_LIMIT
	return int(max_clients)


def make_create_lobby(options: LobbyCreationOptions) -> Dict[str, Any]:
	msg: Dict[str, Any] = {
		"type": CREATE_LOBBY,
		"publicLobby": options.public_lobby,
		"maxClients": clamp_max_clients(options.max_clients),
	}
	if options.lobby_name is not None:
		msg["lobbyName"] = options.lobby_name
	return msg


def make_join_request(offer: str, lobby_name: Optional[str] = None, request_id: Optional[str] = None) -> Dict[str, Any]:
	msg: Dict[str, Any] = {"type": JOIN_REQUEST, "offer": offer}
	if lobby_name is not None:
		msg["lobbyName"] = lobby_name
	if request_id is not None:
		msg["requestId"] = request_id
	return msg


def make_join_invitation(answer: str, request_id: Optional[str] = None) -> Dict[str, Any]:
	msg: Dict[str, Any] = {"type": JOIN_INVITATION, "answer": answer}
	if request_id is not None:
		msg["requestId"] = request_id
	return msg


def make_lobby_details(details: LobbyDetails) -> Dict[str, Any]:
	return {"type": LOBBY_DETAILS, "details": details.to_dict()}


def make_list_lobbies(maximum_lobbies: int, minimum_capacity: int) -> Dict[str, Any]:
	return {"type": LIST_LOBBIES, "maximumLobbies": maximum_lobbies, "minimumCapacity": minimum_capacity}


def make_lobby_list(lobbies: List[LobbyDetails]) -> Dict[str, Any]:
	return {"type": LOBBY_LIST, "lobbies": [lobby.to_dict() for lobby in lobbies]}


def make_error(error: str, message: Optional[str] = None) -> Dict[str, Any]:
	msg: Dict[str, Any] = {"type": ERROR, "error": error}
	if message is not None:
		msg["message"] = message
	return msg


def message_type(msg: Any) -> Optional[str]:
	if not isinstance(msg, dict):
		return None
	mtype = msg.get("type")
	return mtype if isinstance(mtype, str) else None


@dataclass(frozen=True)
class ProtocolError(Exception):
	message: str
