"""
Peer-connection transport.

Negotiates a WebRTC session with upstream: the local offer is POSTed to
the SDP negotiation endpoint over plain HTTP (so the bearer token travels
in the Authorization header), the answer is applied, and JSON frames flow
over an ordered ``oai-events`` data channel. Upstream speech arrives as a
remote audio track that is handed to the listener as-is for playback.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx
from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)

from realtime_voice.errors import AuthenticationError, NotConnectedError, TransportError
from realtime_voice.transport import (
    ABNORMAL_CLOSURE,
    NORMAL_CLOSURE,
    Transport,
    build_url,
)

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "oai-events"


class PeerConnectionTransport(Transport):
    """
    WebRTC carrier with a data channel for events and a media track for audio.

    Attributes:
        url: SDP negotiation endpoint including the ``model`` query parameter
        local_track: Optional microphone track owned by the caller
    """

    def __init__(
        self,
        url: str,
        model: str,
        local_track: Any = None,
        stun_server: Optional[str] = "stun:stun.l.google.com:19302",
        open_timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__()
        self.url = build_url(url, model)
        self.local_track = local_track
        self.stun_server = stun_server
        self.open_timeout = open_timeout
        self._http_client = http_client
        self._pc: Optional[RTCPeerConnection] = None
        self._channel = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return (
            self._channel is not None
            and self._channel.readyState == "open"
            and not self._closing
        )

    def _create_peer_connection(self) -> RTCPeerConnection:
        ice_servers = [RTCIceServer(urls=self.stun_server)] if self.stun_server else []
        return RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice_servers))

    async def _exchange_offer(self, offer_sdp: str, token: str) -> str:
        """POST the offer and return the answer SDP."""
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/sdp",
        }
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.url, content=offer_sdp, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.open_timeout) as client:
                    response = await client.post(self.url, content=offer_sdp, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"SDP negotiation request failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(f"SDP negotiation rejected with HTTP {response.status_code}")
        if response.status_code >= 300:
            logger.error("SDP response error: %s %s", response.status_code, response.text[:200])
            raise TransportError(f"SDP negotiation failed with HTTP {response.status_code}")
        return response.text

    async def open(self, token: str) -> None:
        if self._pc is not None:
            raise TransportError("Peer connection is already open")

        pc = self._create_peer_connection()
        self._pc = pc
        self._closing = False
        opened = asyncio.Event()

        @pc.on("track")
        def on_track(track):
            logger.info("Received remote track: %s", track.kind)
            if track.kind == "audio":
                asyncio.ensure_future(self._listener.on_track(track))

        if self.local_track is not None:
            pc.addTrack(self.local_track)
        else:
            pc.addTransceiver("audio", direction="recvonly")

        channel = pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True)
        self._channel = channel

        @channel.on("open")
        def on_open():
            logger.info("Data channel opened")
            opened.set()

        @channel.on("message")
        async def on_message(message):
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            await self._listener.on_frame(message)

        @channel.on("close")
        async def on_close():
            await self._handle_channel_closed(channel)

        # ICE consent checks mark a half-open connection as failed while the
        # data channel itself may never see a close
        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.info("Peer connection state: %s", pc.connectionState)
            if pc.connectionState in ("failed", "closed") and opened.is_set():
                await self._handle_channel_closed(channel)

        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            answer_sdp = await self._exchange_offer(pc.localDescription.sdp, token)
            await pc.setRemoteDescription(RTCSessionDescription(sdp=answer_sdp, type="answer"))
            await asyncio.wait_for(opened.wait(), timeout=self.open_timeout)
        except asyncio.TimeoutError as e:
            await self._release()
            raise TransportError("Timed out waiting for the data channel to open") from e
        except TransportError:
            await self._release()
            raise
        except Exception as e:
            await self._release()
            raise TransportError(f"Peer connection negotiation failed: {e}") from e

        logger.info("WebRTC connection established")
        await self._listener.on_open()

    async def _handle_channel_closed(self, channel) -> None:
        if channel is not self._channel:
            return
        code = NORMAL_CLOSURE if self._closing else ABNORMAL_CLOSURE
        reason = "Data channel closed"
        logger.info("Data channel closed: code=%s", code)
        await self._release()
        await self._listener.on_close(code, reason)

    async def send(self, frame: str) -> None:
        if not self.is_open:
            raise NotConnectedError("Data channel is not open")
        self._channel.send(frame)

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        if self._pc is None:
            return
        self._closing = True
        channel = self._channel
        if channel is not None:
            channel.close()
        await self._release()
        if channel is not None:
            await self._listener.on_close(code, reason)

    async def _release(self) -> None:
        pc = self._pc
        self._pc = None
        self._channel = None
        self._closing = False
        if pc is not None:
            await pc.close()
