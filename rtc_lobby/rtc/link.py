"""Direct data-channel links between two peers.

Offering side::

    request = await create_link_request()
    # ... deliver request.offer to the peer, get an answer back ...
    link = await request.create_link(answer, timeout=5)

Answering side::

    response = await create_link_response(offer, timeout=5)
    # ... deliver response.answer to the offering peer ...
    link = await response.link

Either step returns an `Error` instead of raising.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import secrets
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Union

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import SessionDescription, candidate_from_sdp, candidate_to_sdp

from ..codec import SerializeOptions, deserialize, parse, serialize
from ..errors import Error, ErrorKind, create_timeout, run_callback


logger = logging.getLogger(__name__)


LinkCallback = Callable[..., Optional[Awaitable[None]]]

CHANNEL_LABEL = "sendDataChannel"

# Upper bound on messages waiting for on_message.
MAX_BACKLOG = 1024

# Typical offer/answer payloads used as deflate dictionaries. Both ends must
# use the same bytes for a given message shape.
OFFER_SAMPLE = (
    b'{"description":{"type":"offer","sdp":"v=0\\r\\no=- 3908357512 3908357512 IN IP4 0.0.0.0\\r\\n'
    b's=-\\r\\nt=0 0\\r\\na=group:BUNDLE 0\\r\\na=msid-semantic:WMS *\\r\\n'
    b'm=application 50931 DTLS/SCTP 5000\\r\\nc=IN IP4 192.168.1.20\\r\\na=mid:0\\r\\n'
    b'a=sctpmap:5000 webrtc-datachannel 65535\\r\\na=max-message-size:65536\\r\\n'
    b'a=candidate:6a6f9f2d0d3e4b0f1c2a3b4c5d6e7f80 1 udp 2130706431 192.168.1.20 50931 typ host\\r\\n'
    b'a=candidate:1f2e3d4c5b6a79880a1b2c3d4e5f6071 1 udp 1694498815 203.0.113.7 50931 typ srflx raddr 192.168.1.20 rport 50931\\r\\n'
    b'a=end-of-candidates\\r\\na=ice-ufrag:Ox5q\\r\\na=ice-pwd:mO8yZnEpFKzz58pOoLcjWQ\\r\\n'
    b'a=fingerprint:sha-256 D2:5E:B3:71:E4:7F:F2:92:A9:51:03:8D:C8:A2:B9:57:0C:6F:24:7D:32:4F:9D:B4:F2:20:14:81:9B:D2:C1:AA\\r\\n'
    b'a=setup:actpass\\r\\n"},'
    b'"candidate":{"candidate":"candidate:6a6f9f2d0d3e4b0f1c2a3b4c5d6e7f80 1 udp 2130706431 192.168.1.20 50931 typ host",'
    b'"sdpMid":"0","sdpMLineIndex":0},"correlationId":"3f9a0c1d5e7b2a4c6e8f0a1b"}'
)
ANSWER_SAMPLE = (
    b'{"description":{"type":"answer","sdp":"v=0\\r\\no=- 3908357513 3908357513 IN IP4 0.0.0.0\\r\\n'
    b's=-\\r\\nt=0 0\\r\\na=group:BUNDLE 0\\r\\na=msid-semantic:WMS *\\r\\n'
    b'm=application 47163 DTLS/SCTP 5000\\r\\nc=IN IP4 192.168.1.21\\r\\na=mid:0\\r\\n'
    b'a=sctpmap:5000 webrtc-datachannel 65535\\r\\na=max-message-size:65536\\r\\n'
    b'a=candidate:0b1c2d3e4f5a69788796a5b4c3d2e1f0 1 udp 2130706431 192.168.1.21 47163 typ host\\r\\n'
    b'a=candidate:9e8d7c6b5a4f3e2d1c0b9a8f7e6d5c4b 1 udp 1694498815 203.0.113.8 47163 typ srflx raddr 192.168.1.21 rport 47163\\r\\n'
    b'a=end-of-candidates\\r\\na=ice-ufrag:sT5k\\r\\na=ice-pwd:PCHo/yGmN/pvYWRz7n2RU4\\r\\n'
    b'a=fingerprint:sha-256 79:78:8D:6E:AF:27:82:28:BC:D8:AF:19:35:74:E6:D6:6B:33:B4:3A:65:1B:40:40:41:DE:A5:81:41:C8:64:A4\\r\\n'
    b'a=setup:active\\r\\n"},'
    b'"candidate":{"candidate":"candidate:0b1c2d3e4f5a69788796a5b4c3d2e1f0 1 udp 2130706431 192.168.1.21 47163 typ host",'
    b'"sdpMid":"0","sdpMLineIndex":0},"correlationId":"3f9a0c1d5e7b2a4c6e8f0a1b"}'
)

OFFER_OPTIONS = SerializeOptions(level=1, dictionary=OFFER_SAMPLE)
ANSWER_OPTIONS = SerializeOptions(level=1, dictionary=ANSWER_SAMPLE)

_CANDIDATE_PREFIX = "candidate:"


def _first_candidate(sdp: str) -> Optional[Dict[str, Any]]:
    """The first ICE candidate aiortc embedded in a local description."""

    session = SessionDescription.parse(sdp)
    for index, media in enumerate(session.media):
        if media.ice_candidates:
            candidate = media.ice_candidates[0]
            return {
                "candidate": _CANDIDATE_PREFIX + candidate_to_sdp(candidate),
                "sdpMid": media.rtp.muxId,
                "sdpMLineIndex": index,
            }
    return None


def _candidate_from_json(obj: Any):
    if not isinstance(obj, dict):
        raise ValueError("missing candidate")
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    if cand_sdp.startswith(_CANDIDATE_PREFIX):
        cand_sdp = cand_sdp[len(_CANDIDATE_PREFIX):]
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


def _description_from_json(obj: Any) -> RTCSessionDescription:
    if not isinstance(obj, dict):
        raise ValueError("missing session description")
    return RTCSessionDescription(sdp=str(obj.get("sdp", "")), type=str(obj.get("type", "")))


async def _apply_remote(pc: RTCPeerConnection, data: Dict[str, Any]) -> None:
    description = _description_from_json(data.get("description"))
    candidate = _candidate_from_json(data.get("candidate"))
    await pc.setRemoteDescription(description)
    # aiortc peers put every candidate and end-of-candidates in the SDP
    # itself; adding one again after that is rejected by aioice.
    if "a=end-of-candidates" in description.sdp:
        return
    await pc.addIceCandidate(candidate)


def encode_description(data: Dict[str, Any], options: SerializeOptions) -> Union[str, Error]:
    payload = serialize(data, options)
    if isinstance(payload, Error):
        return payload
    return base64.b64encode(payload).decode("ascii")


def decode_description(text: Any, options: SerializeOptions) -> Optional[Dict[str, Any]]:
    if not isinstance(text, str) or not text:
        return None
    try:
        payload = base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, ValueError):
        return None
    data = deserialize(payload, options)
    if not isinstance(data, dict):
        return None
    return data


class RTCLink:
    """An open, bidirectional message channel to one peer."""

    def __init__(self, connection: RTCPeerConnection, channel: RTCDataChannel):
        self.connection = connection
        self.channel = channel
        self._on_message: Optional[LinkCallback] = None
        self.on_disconnect: Optional[LinkCallback] = None  # ()
        self._disconnected = False
        # Decoded messages not yet handed to on_message, in arrival order.
        self._backlog: Deque[Any] = deque()
        self._flush_task: Optional[asyncio.Future[None]] = None

        channel.on("message", self._on_channel_message)
        channel.on("close", self._on_channel_close)
        connection.on("connectionstatechange", self._on_connection_state)

    @property
    def on_message(self) -> Optional[LinkCallback]:
        """Called with every decoded inbound message.

        Messages that arrive before a handler is set are delivered once it is.
        """
        return self._on_message

    @on_message.setter
    def on_message(self, callback: Optional[LinkCallback]) -> None:
        self._on_message = callback
        if callback is not None and self._backlog and not self._flushing:
            self._flush_task = asyncio.ensure_future(self._flush())

    @property
    def _flushing(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    def send(self, message: Any) -> Optional[Error]:
        data = serialize(message)
        if isinstance(data, Error):
            return data
        if self.channel.readyState != "open":
            return Error(ErrorKind.CONNECTION, f"The link is not open (state: {self.channel.readyState})")
        self.channel.send(data)
        return None

    async def disconnect(self) -> None:
        self.channel.close()
        await self._handle_disconnect()

    async def _on_channel_message(self, data: Union[bytes, str]) -> None:
        message = parse(data) if isinstance(data, str) else deserialize(data)
        if isinstance(message, Error):
            logger.debug("link dropped invalid message: %s", message.message)
            return
        # Queue behind anything still waiting so delivery keeps channel order.
        if self._on_message is None or self._backlog or self._flushing:
            if len(self._backlog) >= MAX_BACKLOG:
                logger.debug("link backlog full, dropping message")
                return
            self._backlog.append(message)
            return
        await self._deliver(message)

    async def _flush(self) -> None:
        while self._backlog and self._on_message is not None:
            await self._deliver(self._backlog.popleft())

    async def _deliver(self, message: Any) -> None:
        await run_callback(self._on_message, message, label="link on_message callback")

    async def _on_channel_close(self) -> None:
        await self._handle_disconnect()

    async def _on_connection_state(self) -> None:
        state = self.connection.connectionState
        logger.debug("link connectionState=%s", state)
        if state in ("disconnected", "failed", "closed"):
            await self._handle_disconnect()

    async def _handle_disconnect(self) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        logger.debug("link disconnected")
        await run_callback(self.on_disconnect, label="link on_disconnect callback")
        try:
            await self._after_disconnect()
        finally:
            await self.connection.close()

    async def _after_disconnect(self) -> None:
        pass


LinkFactory = Callable[[RTCPeerConnection, RTCDataChannel], RTCLink]


class LinkRequest:
    """Offering half of a handshake: holds the session until an answer arrives."""

    def __init__(self, connection: RTCPeerConnection, channel: RTCDataChannel, offer: str, correlation_id: str):
        self.offer = offer
        self.correlation_id = correlation_id
        self._connection = connection
        self._channel = channel
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel.close()
        await self._connection.close()

    async def create_link(
        self,
        answer: str,
        timeout: float,
        link_factory: LinkFactory = RTCLink,
    ) -> Union[RTCLink, Error]:
        if self._closed:
            return Error(ErrorKind.CONNECTION, "The link request has already been closed")

        data = decode_description(answer, ANSWER_OPTIONS)
        if data is None:
            await self.close()
            return Error(ErrorKind.INVALID_DATA, "Invalid RTC answer")

        received_id = data.get("correlationId")
        if received_id != self.correlation_id:
            await self.close()
            return Error(
                ErrorKind.INVALID_DATA,
                f"The RTC answer does not belong to this offer (expected correlation id "
                f"'{self.correlation_id}', received '{received_id}')",
            )

        try:
            await _apply_remote(self._connection, data)
        except Exception as e:
            await self.close()
            return Error(ErrorKind.INVALID_DATA, f"Invalid RTC answer ({e})")

        channel = self._channel
        handle = create_timeout(timeout, "The peer has not connected", on_timeout=channel.close)

        @channel.on("open")
        def on_open() -> None:
            if handle.done:
                return
            handle.resolve(link_factory(self._connection, channel))

        if channel.readyState == "open":
            on_open()

        link = await handle.result
        if isinstance(link, Error):
            logger.info("link open timed out correlation_id=%s", self.correlation_id)
            await self.close()
            return link
        logger.info("link open correlation_id=%s", self.correlation_id)
        return link


class LinkResponse:
    """Answering half of a handshake.

    `answer` is available immediately. `link` resolves later, once the
    offering peer opens its data channel or the deadline passes.
    """

    def __init__(self, answer: str, link: "Awaitable[Union[RTCLink, Error]]", correlation_id: Optional[str]):
        self.answer = answer
        self.link = link
        self.correlation_id = correlation_id


async def create_link_request(rtc_config: Optional[RTCConfiguration] = None) -> Union[LinkRequest, Error]:
    pc = RTCPeerConnection(configuration=rtc_config)
    channel = pc.createDataChannel(CHANNEL_LABEL)

    try:
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
    except Exception as e:
        await pc.close()
        return Error(ErrorKind.CONNECTION, f"Can't create the RTC offer ({e})")

    assert pc.localDescription is not None
    candidate = _first_candidate(pc.localDescription.sdp)
    if candidate is None:
        await pc.close()
        return Error(ErrorKind.CONNECTION, "No ICE candidate could be gathered")

    correlation_id = secrets.token_hex(12)
    encoded = encode_description(
        {
            "description": {"type": pc.localDescription.type, "sdp": pc.localDescription.sdp},
            "candidate": candidate,
            "correlationId": correlation_id,
        },
        OFFER_OPTIONS,
    )
    if isinstance(encoded, Error):
        await pc.close()
        return Error(ErrorKind.SERIALIZE, "Can't serialize the RTC offer")

    logger.debug("link offer created correlation_id=%s size=%s", correlation_id, len(encoded))
    return LinkRequest(pc, channel, encoded, correlation_id)


async def create_link_response(
    offer: str,
    timeout: float,
    rtc_config: Optional[RTCConfiguration] = None,
    link_factory: LinkFactory = RTCLink,
) -> Union[LinkResponse, Error]:
    data = decode_description(offer, OFFER_OPTIONS)
    if data is None:
        return Error(ErrorKind.INVALID_DATA, "Invalid RTC offer")
    correlation_id = data.get("correlationId")

    pc = RTCPeerConnection(configuration=rtc_config)
    try:
        await _apply_remote_offer(pc, data)
    except Exception as e:
        await pc.close()
        return Error(ErrorKind.INVALID_DATA, f"Invalid RTC offer ({e})")

    # The deadline covers only the wait for the peer's channel.
    handle = create_timeout(timeout, "The peer has not connected", on_timeout=pc.close)

    @pc.on("datachannel")
    def on_datachannel(channel: RTCDataChannel) -> None:
        if handle.done:
            channel.close()
            return
        handle.resolve(link_factory(pc, channel))

    assert pc.localDescription is not None
    candidate = _first_candidate(pc.localDescription.sdp)
    if candidate is None:
        handle.resolve(Error(ErrorKind.CONNECTION, "No ICE candidate could be gathered"))
        await pc.close()
        return Error(ErrorKind.CONNECTION, "No ICE candidate could be gathered")

    encoded = encode_description(
        {
            "description": {"type": pc.localDescription.type, "sdp": pc.localDescription.sdp},
            "candidate": candidate,
            "correlationId": correlation_id,
        },
        ANSWER_OPTIONS,
    )
    if isinstance(encoded, Error):
        handle.resolve(encoded)
        await pc.close()
        return encoded

    logger.debug("link answer created correlation_id=%s size=%s", correlation_id, len(encoded))
    return LinkResponse(encoded, handle.result, correlation_id)


async def _apply_remote_offer(pc: RTCPeerConnection, data: Dict[str, Any]) -> None:
    description = _description_from_json(data.get("description"))
    candidate = _candidate_from_json(data.get("candidate"))
    await pc.setRemoteDescription(description)
    answer = await pc.createAnswer()
    await pc.setLocalDescription(answer)
    if "a=end-of-candidates" not in description.sdp:
        await pc.addIceCandidate(candidate)
