"""Direct peer-to-peer data links brokered through a lobby signaling service."""

from .codec import SerializeOptions, deserialize, parse, serialize, stringify
from .config import LobbyConfig
from .errors import Error, ErrorKind, TimeoutHandle, create_timeout
from .net.protocol import LobbyCreationOptions, LobbyDetails
from .rtc.link import RTCLink, create_link_request, create_link_response
from .rtc.lobby import ClientConnection, LobbyClient, LobbyHost, create_lobby, join_lobby, list_public_lobbies

__all__ = [
    "ClientConnection",
    "Error",
    "ErrorKind",
    "LobbyClient",
    "LobbyConfig",
    "LobbyCreationOptions",
    "LobbyDetails",
    "LobbyHost",
    "RTCLink",
    "SerializeOptions",
    "TimeoutHandle",
    "create_link_request",
    "create_link_response",
    "create_lobby",
    "create_timeout",
    "deserialize",
    "join_lobby",
    "list_public_lobbies",
    "parse",
    "serialize",
    "stringify",
]
