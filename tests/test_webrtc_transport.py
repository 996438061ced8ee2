import inspect
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest

from realtime_voice.errors import AuthenticationError, NotConnectedError, TransportError
from realtime_voice.transport import TransportListener
from realtime_voice.webrtc_transport import DATA_CHANNEL_LABEL, PeerConnectionTransport


class EventSource:
    """Minimal pyee-style ``on`` decorator registry."""

    def __init__(self):
        self.handlers = {}

    def on(self, event):
        def register(handler):
            self.handlers[event] = handler
            return handler
        return register

    async def emit(self, event, *args):
        result = self.handlers[event](*args)
        if inspect.isawaitable(result):
            await result


class FakeDataChannel(EventSource):
    def __init__(self, label, ordered):
        super().__init__()
        self.label = label
        self.ordered = ordered
        self.readyState = "connecting"
        self.sent = []

    def send(self, data):
        self.sent.append(data)

    def close(self):
        self.readyState = "closed"


class FakePeerConnection(EventSource):
    def __init__(self, open_channel=True):
        super().__init__()
        self.open_channel = open_channel
        self.tracks = []
        self.transceivers = []
        self.channel = None
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = "new"
        self.closed = False

    def addTrack(self, track):
        self.tracks.append(track)

    def addTransceiver(self, kind, direction):
        self.transceivers.append((kind, direction))

    def createDataChannel(self, label, ordered=True):
        self.channel = FakeDataChannel(label, ordered)
        return self.channel

    async def createOffer(self):
        return SimpleNamespace(sdp="v=0 offer", type="offer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        if self.open_channel:
            self.channel.readyState = "open"
            await self.channel.emit("open")

    async def close(self):
        self.closed = True
        self.connectionState = "closed"


class RecordingListener(TransportListener):
    def __init__(self):
        self.signals = []

    async def on_open(self):
        self.signals.append(("open",))

    async def on_frame(self, frame):
        self.signals.append(("frame", frame))

    async def on_close(self, code, reason):
        self.signals.append(("close", code))

    async def on_track(self, track):
        self.signals.append(("track", track))


def sdp_endpoint(status=201, body="v=0 answer"):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status, text=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), requests


def make_transport(http_client, local_track=None, open_timeout=1.0):
    transport = PeerConnectionTransport(
        "https://api.openai.com/v1/realtime",
        "gpt-4o-realtime-preview-2024-12-17",
        local_track=local_track,
        open_timeout=open_timeout,
        http_client=http_client,
    )
    listener = RecordingListener()
    transport.bind(listener)
    return transport, listener


@pytest.fixture
def fake_pc():
    pc = FakePeerConnection()
    with patch("realtime_voice.webrtc_transport.RTCPeerConnection", return_value=pc):
        yield pc


@pytest.mark.asyncio
async def test_open_posts_offer_and_applies_answer(fake_pc):
    client, requests = sdp_endpoint()
    transport, listener = make_transport(client)

    await transport.open("ek_123")

    request = requests[0]
    assert str(request.url) == "https://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview-2024-12-17"
    assert request.headers["Authorization"] == "Bearer ek_123"
    assert request.headers["Content-Type"] == "application/sdp"
    assert request.content == b"v=0 offer"
    assert fake_pc.remoteDescription.sdp == "v=0 answer"
    assert fake_pc.remoteDescription.type == "answer"
    assert fake_pc.channel.label == DATA_CHANNEL_LABEL
    assert fake_pc.channel.ordered is True
    assert transport.is_open
    assert listener.signals == [("open",)]


@pytest.mark.asyncio
async def test_receive_only_transceiver_without_local_track(fake_pc):
    client, _ = sdp_endpoint()
    transport, _ = make_transport(client)

    await transport.open("ek_123")

    assert fake_pc.transceivers == [("audio", "recvonly")]
    assert fake_pc.tracks == []


@pytest.mark.asyncio
async def test_local_track_is_added(fake_pc):
    client, _ = sdp_endpoint()
    microphone = SimpleNamespace(kind="audio")
    transport, _ = make_transport(client, local_track=microphone)

    await transport.open("ek_123")

    assert fake_pc.tracks == [microphone]
    assert fake_pc.transceivers == []


@pytest.mark.asyncio
async def test_negotiation_401_is_authentication_error(fake_pc):
    client, _ = sdp_endpoint(status=401, body="unauthorized")
    transport, listener = make_transport(client)

    with pytest.raises(AuthenticationError):
        await transport.open("ek_bad")

    assert fake_pc.closed
    assert listener.signals == []
    assert not transport.is_open


@pytest.mark.asyncio
async def test_negotiation_server_error_is_transport_error(fake_pc):
    client, _ = sdp_endpoint(status=500, body="oops")
    transport, _ = make_transport(client)

    with pytest.raises(TransportError) as exc_info:
        await transport.open("ek_123")

    assert not isinstance(exc_info.value, AuthenticationError)
    assert fake_pc.closed


@pytest.mark.asyncio
async def test_channel_that_never_opens_times_out(fake_pc):
    fake_pc.open_channel = False
    client, _ = sdp_endpoint()
    transport, _ = make_transport(client, open_timeout=0.01)

    with pytest.raises(TransportError, match="Timed out"):
        await transport.open("ek_123")

    assert fake_pc.closed


@pytest.mark.asyncio
async def test_messages_and_send(fake_pc):
    client, _ = sdp_endpoint()
    transport, listener = make_transport(client)
    await transport.open("ek_123")

    await fake_pc.channel.emit("message", '{"type": "session.created"}')
    await fake_pc.channel.emit("message", b'{"type": "response.done"}')
    await transport.send('{"type": "response.create"}')

    assert listener.signals[1:] == [
        ("frame", '{"type": "session.created"}'),
        ("frame", '{"type": "response.done"}'),
    ]
    assert fake_pc.channel.sent == ['{"type": "response.create"}']


@pytest.mark.asyncio
async def test_remote_channel_close_is_abnormal(fake_pc):
    client, _ = sdp_endpoint()
    transport, listener = make_transport(client)
    await transport.open("ek_123")
    channel = fake_pc.channel

    channel.readyState = "closed"
    await channel.emit("close")

    assert listener.signals[-1] == ("close", 1006)
    assert fake_pc.closed
    with pytest.raises(NotConnectedError):
        await transport.send("{}")


@pytest.mark.asyncio
async def test_local_close_reports_requested_code(fake_pc):
    client, _ = sdp_endpoint()
    transport, listener = make_transport(client)
    await transport.open("ek_123")
    channel = fake_pc.channel

    await transport.close(1000, "Client disconnect")
    # The late close event from the released channel is ignored
    await channel.emit("close")

    assert listener.signals == [("open",), ("close", 1000)]
    assert fake_pc.closed


@pytest.mark.asyncio
async def test_remote_audio_track_reaches_listener(fake_pc, run_pending):
    client, _ = sdp_endpoint()
    transport, listener = make_transport(client)
    await transport.open("ek_123")

    audio = SimpleNamespace(kind="audio")
    video = SimpleNamespace(kind="video")
    await fake_pc.emit("track", video)
    await fake_pc.emit("track", audio)
    await run_pending()

    assert listener.signals[1:] == [("track", audio)]


@pytest.mark.asyncio
async def test_failed_peer_connection_is_abnormal_close(fake_pc):
    """A connection that fails its consent checks is reported even if the channel stays silent."""
    client, _ = sdp_endpoint()
    transport, listener = make_transport(client)
    await transport.open("ek_123")

    fake_pc.connectionState = "failed"
    await fake_pc.emit("connectionstatechange")
    # The close event that follows for the released channel is ignored
    await fake_pc.channel.emit("close")

    assert listener.signals == [("open",), ("close", 1006)]
    assert fake_pc.closed
    assert not transport.is_open


@pytest.mark.asyncio
async def test_connection_state_after_local_close_is_ignored(fake_pc):
    client, _ = sdp_endpoint()
    transport, listener = make_transport(client)
    await transport.open("ek_123")

    await transport.close(1000, "Client disconnect")
    await fake_pc.emit("connectionstatechange")

    assert listener.signals == [("open",), ("close", 1000)]
