"""
Transport adapters for the realtime protocol client.

A transport carries JSON text frames in both directions and reports three
lifecycle signals to a bound listener: opened, frame received and closed
(with a close code and reason). ``SocketTransport`` speaks to the
upstream WebSocket endpoint; the peer-connection variant lives in
``realtime_voice.webrtc_transport``.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

from realtime_voice.errors import AuthenticationError, NotConnectedError, TransportError

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
POLICY_VIOLATION = 1008

WS_MAX_SIZE = 16 * 1024 * 1024  # audio deltas can be large
WS_PING_INTERVAL = 20


class AuthMode(str, Enum):
    """How the bearer token reaches upstream on a socket transport."""
    HEADER = "header"
    SUBPROTOCOL = "subprotocol"
    FIRST_MESSAGE = "first_message"


class TransportListener:
    """Receiver of transport lifecycle signals.

    The client subclasses this; the defaults do nothing so a transport can
    be exercised without a client attached.
    """

    async def on_open(self) -> None:
        pass

    async def on_frame(self, frame: str) -> None:
        pass

    async def on_close(self, code: int, reason: str) -> None:
        pass

    async def on_track(self, track: Any) -> None:
        pass


class Transport(ABC):
    """Uniform interface over the socket and peer-connection carriers."""

    def __init__(self) -> None:
        self._listener: TransportListener = TransportListener()

    def bind(self, listener: TransportListener) -> None:
        """Attach the single owner of this transport."""
        self._listener = listener

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    async def open(self, token: str) -> None:
        """Establish the carrier. Raises ``TransportError`` on failure."""

    @abstractmethod
    async def send(self, frame: str) -> None:
        """Write one frame. Raises ``NotConnectedError`` when not open."""

    @abstractmethod
    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        """Tear the carrier down. Safe to call more than once."""


def build_url(base_url: str, model: str) -> str:
    """Append the model query parameter to an endpoint URL."""
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{urlencode({'model': model})}"


class SocketTransport(Transport):
    """
    Persistent WebSocket carrier.

    Each inbound text message is one JSON event. Frames are handed to the
    listener in arrival order from a single reader task.

    Attributes:
        url: Endpoint including the ``model`` query parameter
        auth_mode: Where the credential is placed during the handshake
    """

    def __init__(
        self,
        url: str,
        model: str,
        auth_mode: AuthMode = AuthMode.HEADER,
        open_timeout: float = 30.0,
        connect: Callable[..., Awaitable[Any]] = websockets.connect,
    ):
        super().__init__()
        self.url = build_url(url, model)
        self.auth_mode = AuthMode(auth_mode)
        self.open_timeout = open_timeout
        self._connect = connect
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing

    def _handshake_options(self, token: str) -> dict:
        options: dict[str, Any] = {
            "max_size": WS_MAX_SIZE,
            "ping_interval": WS_PING_INTERVAL,
            "open_timeout": self.open_timeout,
        }
        if self.auth_mode is AuthMode.HEADER:
            options["additional_headers"] = {
                "Authorization": f"Bearer {token}",
                "OpenAI-Beta": "realtime=v1",
            }
        elif self.auth_mode is AuthMode.SUBPROTOCOL:
            options["subprotocols"] = [
                "realtime",
                f"openai-insecure-api-key.{token}",
                "openai-beta.realtime-v1",
            ]
        return options

    async def open(self, token: str) -> None:
        if self._ws is not None:
            raise TransportError("Socket transport is already open")

        logger.info("Opening socket transport to %s (auth=%s)", self.url, self.auth_mode.value)
        try:
            ws = await self._connect(self.url, **self._handshake_options(token))
        except InvalidStatus as e:
            status = e.response.status_code
            if status in (401, 403):
                raise AuthenticationError(f"Handshake rejected with HTTP {status}") from e
            raise TransportError(f"Handshake rejected with HTTP {status}") from e
        except (InvalidHandshake, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"Failed to open socket: {e}") from e

        if self.auth_mode is AuthMode.FIRST_MESSAGE:
            try:
                await ws.send(json.dumps({"type": "authenticate", "token": token}))
            except ConnectionClosed as e:
                await ws.close()
                raise TransportError("Socket closed during authentication") from e

        self._ws = ws
        self._closing = False
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        await self._listener.on_open()

    async def _read_loop(self, ws) -> None:
        try:
            async for message in ws:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                await self._listener.on_frame(message)
        except ConnectionClosed:
            pass
        except Exception:
            logger.exception("Socket reader failed")
            await ws.close(code=1011, reason="reader failure")

        code = ws.close_code if ws.close_code is not None else ABNORMAL_CLOSURE
        reason = ws.close_reason or ""
        logger.info("Socket closed: code=%s reason=%s", code, reason)
        self._ws = None
        self._closing = False
        await self._listener.on_close(code, reason)

    async def send(self, frame: str) -> None:
        if not self.is_open:
            raise NotConnectedError("Socket transport is not open")
        try:
            await self._ws.send(frame)
        except ConnectionClosed as e:
            raise NotConnectedError("Socket closed while sending") from e

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        ws = self._ws
        if ws is None:
            return
        self._closing = True
        await ws.close(code=code, reason=reason)

        # The reader reports on_close once the closing handshake finishes.
        # When close() is called from inside a listener callback the reader
        # is the current task and must not wait on itself.
        task = self._reader_task
        if task is not None and task is not asyncio.current_task():
            await task
        self._reader_task = None
