"""
Realtime session protocol client.

Speaks the realtime conversational voice protocol over a pluggable
transport (WebSocket or WebRTC data channel). Tracks session,
conversation and active-response identity, turns typed commands into wire
frames, re-emits every inbound frame as a typed event to subscribers, and
reconnects with exponential backoff after unexpected drops.

Everything runs on one asyncio loop; frames are processed strictly in the
order the transport delivers them.
"""

import asyncio
import inspect
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union

from realtime_voice.audio import encode_audio
from realtime_voice.config import Settings, get_settings
from realtime_voice.credentials import CredentialProvider
from realtime_voice.errors import AuthenticationError, NotConnectedError, RealtimeError
from realtime_voice.models import (
    WILDCARD,
    AuthenticationErrorEvent,
    ClientCommand,
    ConnectedEvent,
    ContentPart,
    ConversationCreatedEvent,
    ConversationItem,
    ConversationItemCreateCommand,
    ConversationItemDeleteCommand,
    ConversationItemTruncateCommand,
    DisconnectedEvent,
    ErrorDetail,
    ErrorEvent,
    InputAudioBufferAppendCommand,
    InputAudioBufferClearCommand,
    InputAudioBufferCommitCommand,
    RateLimitsUpdatedEvent,
    RealtimeEvent,
    ReconnectFailedEvent,
    ReconnectingEvent,
    RemoteAudioTrackEvent,
    ResponseCancelCommand,
    ResponseCreateCommand,
    ResponseCreatedEvent,
    ResponseDoneEvent,
    ResponseOptions,
    SessionConfig,
    SessionCreatedEvent,
    SessionUpdateCommand,
    SessionUpdatedEvent,
    TranscriptionFailedEvent,
    parse_server_event,
)
from realtime_voice.transport import (
    NORMAL_CLOSURE,
    POLICY_VIOLATION,
    AuthMode,
    SocketTransport,
    Transport,
    TransportListener,
)

logger = logging.getLogger(__name__)

Handler = Callable[[RealtimeEvent], Any]


class ConnectionState(Enum):
    """Enum representing the connection states of the realtime client."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"


@dataclass
class ReconnectPolicy:
    """Exponential backoff for reconnecting after an unexpected drop."""
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    max_attempts: int = 5

    def delay_ms(self, attempt: int) -> int:
        """Delay before the given 1-based attempt."""
        return min(self.base_delay_ms * 2 ** (attempt - 1), self.max_delay_ms)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconnectPolicy":
        return cls(
            base_delay_ms=settings.reconnect_base_delay_ms,
            max_delay_ms=settings.reconnect_max_delay_ms,
            max_attempts=settings.max_reconnect_attempts,
        )


class RealtimeClient(TransportListener):
    """
    Protocol client for one upstream realtime session at a time.

    Subscribe with ``on(kind, handler)`` where ``kind`` is an event ``type``
    (``"session.created"``, ``"response.audio.delta"``, ``"connected"`` ...)
    or ``"*"`` for every event. Handlers may be plain functions or
    coroutine functions and receive the typed event model.

    Attributes:
        transport: The carrier this client exclusively owns
        reconnect_policy: Backoff settings for unexpected drops
    """

    def __init__(
        self,
        transport: Transport,
        credentials: CredentialProvider,
        reconnect_policy: Optional[ReconnectPolicy] = None,
    ):
        """
        Initialize the realtime client.

        Args:
            transport: Socket or peer-connection transport, not shared
            credentials: Provider asked for a bearer token on every open
            reconnect_policy: Optional backoff override (default: from settings)
        """
        self.transport = transport
        self.transport.bind(self)
        self._credentials = credentials
        self.reconnect_policy = reconnect_policy or ReconnectPolicy.from_settings(get_settings())

        self._state = ConnectionState.DISCONNECTED
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._wildcard_handlers: list[Handler] = []

        self._session_id: Optional[str] = None
        self._conversation_id: Optional[str] = None
        self._active_response_id: Optional[str] = None

        self._reconnect_attempts = 0
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        # Keyed by model class so a known type that fell back to UnknownEvent
        # never reaches a typed handler
        self._bookkeeping = {
            SessionCreatedEvent: self._on_session_created,
            SessionUpdatedEvent: self._on_session_updated,
            ConversationCreatedEvent: self._on_conversation_created,
            ResponseCreatedEvent: self._on_response_created,
            ResponseDoneEvent: self._on_response_done,
            TranscriptionFailedEvent: self._on_transcription_failed,
            RateLimitsUpdatedEvent: self._on_rate_limits_updated,
        }

    # --- State queries ---

    @property
    def state(self) -> ConnectionState:
        """Get the current connection state."""
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == ConnectionState.OPEN

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def active_response_id(self) -> Optional[str]:
        return self._active_response_id

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def get_status(self) -> dict:
        """
        Get the current status of the client.

        Returns:
            Dictionary containing the connection state and session identity
        """
        return {
            "state": self._state.value,
            "is_open": self.is_open,
            "session_id": self._session_id,
            "conversation_id": self._conversation_id,
            "active_response_id": self._active_response_id,
            "reconnect_attempts": self._reconnect_attempts,
        }

    # --- Subscription ---

    def on(self, kind: str, handler: Handler) -> Handler:
        """Register ``handler`` for events of ``kind`` (``"*"`` for all)."""
        if kind == WILDCARD:
            self._wildcard_handlers.append(handler)
        else:
            self._handlers[kind].append(handler)
        return handler

    def off(self, kind: str, handler: Handler) -> None:
        """Remove a handler registered with ``on``. Unknown handlers are ignored."""
        handlers = self._wildcard_handlers if kind == WILDCARD else self._handlers.get(kind, [])
        if handler in handlers:
            handlers.remove(handler)

    def on_any(self, handler: Handler) -> Handler:
        return self.on(WILDCARD, handler)

    def off_any(self, handler: Handler) -> None:
        self.off(WILDCARD, handler)

    async def _emit(self, event: RealtimeEvent) -> None:
        # Snapshot so handlers may subscribe/unsubscribe while dispatching
        handlers = list(self._handlers.get(event.type, ())) + list(self._wildcard_handlers)
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %s raised", event.type)

    # --- Connection lifecycle ---

    async def connect(self) -> None:
        """
        Open the transport and start receiving events.

        The first attempt is never retried; a failure is emitted as ``error``
        (or ``authentication_error``) and re-raised to the caller.

        Raises:
            TransportError: the transport could not be established
            CredentialError: no token could be obtained
        """
        if self._state != ConnectionState.DISCONNECTED:
            logger.warning("Already connected or connecting, state: %s", self._state.value)
            return

        self._state = ConnectionState.CONNECTING
        self._reconnect_attempts = 0
        logger.info("Connecting to realtime service")

        try:
            await self._open_transport()
        except RealtimeError as e:
            self._state = ConnectionState.DISCONNECTED
            logger.error("Connection failed: %s", e)
            await self._report_open_failure(e)
            raise

    async def _open_transport(self) -> None:
        token = await self._credentials.get_token()
        await self.transport.open(token)

    async def _report_open_failure(self, error: RealtimeError) -> None:
        if isinstance(error, AuthenticationError):
            await self._emit(AuthenticationErrorEvent(code=error.code, message=str(error)))
        else:
            await self._emit(ErrorEvent(error=ErrorDetail(
                type="connection_error",
                code=getattr(error, "code", "credential_error"),
                message=str(error),
            )))

    async def disconnect(self) -> None:
        """
        Gracefully disconnect.

        Cancels any pending reconnection before closing the transport so a
        reconnect cannot race the shutdown.
        """
        if self._state in (ConnectionState.DISCONNECTED, ConnectionState.CLOSING):
            logger.debug("Disconnect requested while %s", self._state.value)
            return

        logger.info("Disconnecting from realtime service")
        await self._teardown(NORMAL_CLOSURE, "Client disconnect")
        logger.info("Disconnected successfully")

    async def _teardown(self, code: int, reason: str) -> None:
        self._state = ConnectionState.CLOSING
        await self._cancel_reconnect()
        try:
            await self.transport.close(code, reason)
        except Exception:
            logger.exception("Error closing transport")
        self._reset_session_state()
        self._state = ConnectionState.DISCONNECTED
        await self._emit(DisconnectedEvent(code=code, reason=reason))

    def _reset_session_state(self) -> None:
        self._session_id = None
        self._conversation_id = None
        self._active_response_id = None

    # --- Transport signals ---

    async def on_open(self) -> None:
        logger.info("Transport opened")
        self._state = ConnectionState.OPEN
        self._reconnect_attempts = 0
        await self._emit(ConnectedEvent())

    async def on_track(self, track: Any) -> None:
        await self._emit(RemoteAudioTrackEvent(track=track))

    async def on_close(self, code: int, reason: str) -> None:
        if self._state in (ConnectionState.CLOSING, ConnectionState.DISCONNECTED):
            # We initiated this close
            return

        logger.warning("Transport closed unexpectedly: code=%s reason=%s", code, reason)
        self._reset_session_state()
        self._state = ConnectionState.DISCONNECTED
        await self._emit(DisconnectedEvent(code=code, reason=reason))

        if code == POLICY_VIOLATION or "auth" in reason.lower():
            logger.error("Transport closed for authentication reasons, not reconnecting")
            await self._emit(AuthenticationErrorEvent(
                code=code,
                message=reason or "Authentication failed",
            ))
            return

        if code != NORMAL_CLOSURE:
            await self._schedule_reconnect()

    async def on_frame(self, frame: str) -> None:
        try:
            data = json.loads(frame)
            event = parse_server_event(data)
        except ValueError as e:
            # json.JSONDecodeError is a ValueError too
            logger.warning("Dropping malformed frame (%s): %.200s", e, frame)
            return

        logger.debug("Received event: %s", event.type)

        if isinstance(event, ErrorEvent):
            await self._handle_error(event)
            return

        bookkeeping = self._bookkeeping.get(type(event))
        if bookkeeping:
            try:
                bookkeeping(event)
            except Exception:
                logger.exception("Bookkeeping for %s failed", event.type)

        await self._emit(event)

    async def _handle_error(self, event: ErrorEvent) -> None:
        """Handle error events from upstream."""
        error = event.error
        if event.is_authentication_error:
            logger.error("Authentication error from upstream: %s - %s", error.code, error.message)
            await self._emit(AuthenticationErrorEvent(
                code=error.code,
                message=error.message or "Invalid API key",
            ))
            await self._teardown(NORMAL_CLOSURE, "Authentication failed")
            return

        logger.error("Upstream error event: %s - %s", error.code, error.message)
        if self._active_response_id == "":
            # The pending response.create was rejected
            self._active_response_id = None
        await self._emit(event)

    # --- Bookkeeping for known events ---

    def _on_session_created(self, event: SessionCreatedEvent) -> None:
        self._session_id = event.session.id
        logger.info("Session created: %s", self._session_id)

    def _on_session_updated(self, event: SessionUpdatedEvent) -> None:
        if event.session.id:
            self._session_id = event.session.id
        logger.info("Session updated confirmed by upstream")

    def _on_conversation_created(self, event: ConversationCreatedEvent) -> None:
        self._conversation_id = event.conversation.id
        logger.info("Conversation created: %s", self._conversation_id)

    def _on_response_created(self, event: ResponseCreatedEvent) -> None:
        self._active_response_id = event.response.id or ""

    def _on_response_done(self, event: ResponseDoneEvent) -> None:
        response = event.response
        if self._active_response_id in (None, "", response.id):
            self._active_response_id = None

        if response.status == "failed":
            error = (response.status_details or {}).get("error") or {}
            logger.error("Response failed: %s - %s", error.get("code"), error.get("message"))
        elif response.usage:
            logger.info(
                "Response usage - input tokens: %s, output tokens: %s",
                response.usage.get("input_tokens", "N/A"),
                response.usage.get("output_tokens", "N/A"),
            )

    def _on_transcription_failed(self, event: TranscriptionFailedEvent) -> None:
        message = event.error.message if event.error else "Transcription failed"
        logger.warning("Transcription failed (non-critical): %s", message)

    def _on_rate_limits_updated(self, event: RateLimitsUpdatedEvent) -> None:
        for limit in event.rate_limits:
            logger.debug("Rate limit - %s: %s/%s remaining", limit.name, limit.remaining, limit.limit)

    # --- Reconnection ---

    async def _schedule_reconnect(self) -> None:
        policy = self.reconnect_policy
        if self._reconnect_attempts >= policy.max_attempts:
            logger.error("Giving up after %d reconnection attempts", self._reconnect_attempts)
            self._state = ConnectionState.DISCONNECTED
            await self._emit(ReconnectFailedEvent(attempts=self._reconnect_attempts))
            return

        self._reconnect_attempts += 1
        delay_ms = policy.delay_ms(self._reconnect_attempts)
        self._state = ConnectionState.RECONNECTING
        logger.info(
            "Reconnecting in %dms (attempt %d/%d)",
            delay_ms, self._reconnect_attempts, policy.max_attempts,
        )
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay_ms / 1000, self._start_reconnect)
        await self._emit(ReconnectingEvent(attempt=self._reconnect_attempts, delay_ms=delay_ms))

    def _start_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._state != ConnectionState.RECONNECTING:
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await self._open_transport()
        except AuthenticationError as e:
            logger.error("Reconnection rejected by upstream: %s", e)
            self._state = ConnectionState.DISCONNECTED
            await self._emit(AuthenticationErrorEvent(code=e.code, message=str(e)))
        except RealtimeError as e:
            logger.warning("Reconnection attempt %d failed: %s", self._reconnect_attempts, e)
            if self._state == ConnectionState.RECONNECTING:
                await self._schedule_reconnect()
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    async def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # --- Commands ---

    async def _send(self, command: ClientCommand) -> None:
        if self._state != ConnectionState.OPEN or not self.transport.is_open:
            logger.warning("Cannot send %s: connection is %s", command.type, self._state.value)
            raise NotConnectedError(f"Cannot send {command.type} while {self._state.value}")
        await self.transport.send(json.dumps(command.to_wire()))

    async def send_command(self, command: Union[ClientCommand, dict]) -> None:
        """
        Send an arbitrary command, e.g. one relayed from a browser.

        Only the ``type`` discriminator is checked; upstream validates the rest.
        """
        if isinstance(command, dict):
            command = ClientCommand.model_validate(command)
        await self._send(command)

    async def configure_session(self, session: Union[SessionConfig, dict]) -> None:
        """
        Send a session configuration.

        Confirmation arrives asynchronously as ``session.created`` /
        ``session.updated``; nothing is awaited here.
        """
        if isinstance(session, dict):
            session = SessionConfig.model_validate(session)
        logger.info("Configuring session")
        await self._send(SessionUpdateCommand(session=session))

    async def append_audio(self, audio: bytes) -> None:
        """
        Append raw audio bytes to the upstream input buffer.

        Args:
            audio: PCM16 (or negotiated codec) bytes, base64-encoded here
        """
        await self._send(InputAudioBufferAppendCommand(audio=encode_audio(audio)))

    async def commit_audio(self) -> None:
        """
        Commit the input audio buffer.

        With server VAD upstream commits on its own; use this for manual
        turn taking such as push-to-talk.
        """
        await self._send(InputAudioBufferCommitCommand())

    async def clear_audio(self) -> None:
        """Discard any buffered input audio."""
        await self._send(InputAudioBufferClearCommand())

    async def create_conversation_item(
        self,
        item: Union[ConversationItem, dict],
        previous_item_id: Optional[str] = None,
    ) -> None:
        """Insert an item; upstream answers with ``conversation.item.created`` or ``error``."""
        if isinstance(item, dict):
            item = ConversationItem.model_validate(item)
        command = ConversationItemCreateCommand(item=item)
        if previous_item_id is not None:
            command.previous_item_id = previous_item_id
        await self._send(command)

    async def truncate_conversation_item(self, item_id: str, content_index: int, audio_end_ms: int) -> None:
        await self._send(ConversationItemTruncateCommand(
            item_id=item_id,
            content_index=content_index,
            audio_end_ms=audio_end_ms,
        ))

    async def delete_conversation_item(self, item_id: str) -> None:
        await self._send(ConversationItemDeleteCommand(item_id=item_id))

    async def create_response(self, options: Optional[Union[ResponseOptions, dict]] = None) -> None:
        """Ask upstream to start a response, optionally overriding session settings."""
        if isinstance(options, dict):
            options = ResponseOptions.model_validate(options)
        command = ResponseCreateCommand()
        if options is not None:
            command.response = options
        await self._send(command)
        # Pending until response.created names it, so a cancel can go out first
        if self._active_response_id is None:
            self._active_response_id = ""

    async def cancel_response(self) -> None:
        """
        Cancel the active response.

        Also sent while a ``response.create`` is still waiting for
        ``response.created``. A no-op when no response is in progress.
        """
        if self._active_response_id is None:
            logger.debug("No active response to cancel")
            return

        logger.info("Cancelling response %s", self._active_response_id)
        await self._send(ResponseCancelCommand())
        self._active_response_id = None

    async def send_text(self, text: str, create_response: bool = True) -> None:
        """
        Send a user text message to the conversation.

        Args:
            text: The text message to send
            create_response: Whether to trigger a response right away
        """
        await self.create_conversation_item(ConversationItem(
            type="message",
            role="user",
            content=[ContentPart(type="input_text", text=text)],
        ))
        if create_response:
            await self.create_response()
        logger.info("Text message sent: %s", text[:50] if len(text) > 50 else text)


def create_client(
    credentials: CredentialProvider,
    strategy: str = "socket",
    settings: Optional[Settings] = None,
    local_track: Any = None,
) -> RealtimeClient:
    """
    Build a client wired to the transport named by ``strategy``.

    Args:
        credentials: Token provider
        strategy: ``"socket"`` or ``"webrtc"``
        settings: Optional settings (default: loaded from the environment)
        local_track: Microphone track for the WebRTC strategy
    """
    settings = settings or get_settings()

    if strategy == "socket":
        transport: Transport = SocketTransport(
            settings.realtime_socket_url,
            settings.realtime_model,
            auth_mode=AuthMode(settings.auth_mode),
            open_timeout=settings.open_timeout,
        )
    elif strategy == "webrtc":
        # aiortc is only imported when a peer connection is requested
        from realtime_voice.webrtc_transport import PeerConnectionTransport

        transport = PeerConnectionTransport(
            settings.realtime_negotiation_url,
            settings.realtime_model,
            local_track=local_track,
            stun_server=settings.stun_server,
            open_timeout=settings.open_timeout,
        )
    else:
        raise ValueError(f"Unknown transport strategy: {strategy}")

    return RealtimeClient(transport, credentials, ReconnectPolicy.from_settings(settings))
