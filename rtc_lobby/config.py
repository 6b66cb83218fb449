"""Runtime configuration.

Values come from environment variables so that hosts and clients can be tuned
without code changes:

- RTC_LOBBY_TIMEOUT: default deadline (seconds) for create/join/list calls.
- RTC_LOBBY_ANSWER_TIMEOUT: how long a host waits for a joining peer to open
  its data channel.
- RTC_LOBBY_ICE_SERVERS: comma separated STUN/TURN urls.
- RTC_LOBBY_HOST_URL / RTC_LOBBY_CLIENT_URL: signaling service endpoints.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List

from aiortc import RTCConfiguration, RTCIceServer


logger = logging.getLogger(__name__)


DEFAULT_HOST_URL = "ws://127.0.0.1:3030/api/host"
DEFAULT_CLIENT_URL = "http://127.0.0.1:3030/api/client"


def _env_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return float(v)
    except Exception:
        logger.warning("config ignoring invalid %s=%r", name, v)
        return default


def _env_list(name: str) -> List[str]:
    v = os.environ.get(name, "")
    return [item.strip() for item in v.split(",") if item.strip()]


@dataclass
class LobbyConfig:
    timeout: float = 5.0
    answer_timeout: float = 5.0
    ice_servers: List[str] = field(default_factory=list)
    host_url: str = DEFAULT_HOST_URL
    client_url: str = DEFAULT_CLIENT_URL

    @classmethod
    def from_env(cls) -> "LobbyConfig":
        return cls(
            timeout=_env_float("RTC_LOBBY_TIMEOUT", cls.timeout),
            answer_timeout=_env_float("RTC_LOBBY_ANSWER_TIMEOUT", cls.answer_timeout),
            ice_servers=_env_list("RTC_LOBBY_ICE_SERVERS"),
            host_url=os.environ.get("RTC_LOBBY_HOST_URL", DEFAULT_HOST_URL),
            client_url=os.environ.get("RTC_LOBBY_CLIENT_URL", DEFAULT_CLIENT_URL),
        )

    def rtc_configuration(self) -> RTCConfiguration:
        # An empty list keeps aiortc from falling back to its public STUN server.
        return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])
