import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from starlette.websockets import WebSocketState

from realtime_voice.config import Settings, configure_logging, get_settings
from realtime_voice.credentials import StaticCredentialProvider
from realtime_voice.errors import NotConnectedError, RealtimeError
from realtime_voice.models import (
    InputAudioTranscription,
    RealtimeEvent,
    ServerEvent,
    SessionConfig,
    TurnDetection,
)
from realtime_voice.realtime_client import RealtimeClient, ReconnectPolicy
from realtime_voice.transport import AuthMode, SocketTransport

logger = logging.getLogger(__name__)

# Close codes sent to the browser
CLOSE_INVALID_TOKEN = 4001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    configure_logging(get_settings().log_level)
    yield


app = FastAPI(
    title="Realtime Voice Relay",
    description="WebSocket relay for the realtime voice protocol",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def default_session(settings: Settings) -> SessionConfig:
    """Session sent upstream whenever the relay (re)connects."""
    return SessionConfig(
        modalities=["text", "audio"],
        instructions=settings.relay_instructions,
        voice="alloy",
        input_audio_format="pcm16",
        output_audio_format="pcm16",
        input_audio_transcription=InputAudioTranscription(model="whisper-1"),
        turn_detection=TurnDetection(threshold=0.5, prefix_padding_ms=300, silence_duration_ms=200),
        temperature=0.8,
        max_response_output_tokens="inf",
    )


def build_upstream_client(settings: Settings) -> RealtimeClient:
    """Client authenticated with the server-side key; the browser never sees it."""
    transport = SocketTransport(
        settings.realtime_socket_url,
        settings.realtime_model,
        auth_mode=AuthMode.HEADER,
        open_timeout=settings.open_timeout,
    )
    return RealtimeClient(
        transport,
        StaticCredentialProvider(settings.openai_api_key),
        ReconnectPolicy.from_settings(settings),
    )


async def _authenticate_browser(websocket: WebSocket, expected_token: str) -> bool:
    """Require an ``authenticate`` frame carrying the relay token."""
    try:
        message = json.loads(await websocket.receive_text())
    except (json.JSONDecodeError, WebSocketDisconnect):
        return False
    return (
        isinstance(message, dict)
        and message.get("type") == "authenticate"
        and message.get("token") == expected_token
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.websocket("/api/realtime/ws")
async def realtime_relay(websocket: WebSocket):
    """Proxy a browser socket to the upstream realtime service."""
    settings = get_settings()
    await websocket.accept()

    if settings.relay_token and not await _authenticate_browser(websocket, settings.relay_token):
        await websocket.close(code=CLOSE_INVALID_TOKEN, reason="Invalid or missing token")
        return

    if not settings.openai_api_key:
        logger.error("No OpenAI API key configured")
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="No API key configured")
        return

    client = build_upstream_client(settings)
    upstream_done = asyncio.Event()
    close_code = {"code": 1000, "reason": ""}

    def finish(code: int, reason: str) -> None:
        # First reason wins; a teardown emits disconnected after the cause
        if upstream_done.is_set():
            return
        close_code["code"] = code
        close_code["reason"] = reason
        upstream_done.set()

    async def send_to_browser(event: RealtimeEvent):
        """Forward upstream protocol events verbatim."""
        if not isinstance(event, ServerEvent):
            return
        try:
            await websocket.send_json(event.model_dump(mode="json"))
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Browser socket gone while forwarding %s: %s", event.type, e)

    async def replay_session(event: RealtimeEvent):
        await client.configure_session(default_session(settings))

    client.on_any(send_to_browser)
    client.on("connected", replay_session)
    client.on("authentication_error", lambda e: finish(CLOSE_POLICY_VIOLATION, "Authentication failed"))
    client.on("reconnect_failed", lambda e: finish(CLOSE_INTERNAL_ERROR, "Upstream unavailable"))
    client.on("disconnected", lambda e: finish(e.code, e.reason) if e.code == 1000 else None)

    async def pump_browser():
        """Forward browser frames upstream until the browser leaves."""
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("Browser disconnected")
                return

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                # Ignore malformed messages
                continue

            try:
                await client.send_command(message)
            except NotConnectedError as e:
                await websocket.send_json({
                    "type": "error",
                    "error": {"type": "relay_error", "code": "not_connected", "message": str(e)},
                })
            except ValueError as e:
                await websocket.send_json({
                    "type": "error",
                    "error": {"type": "invalid_request_error", "code": "invalid_command", "message": str(e)},
                })

    try:
        await client.connect()
    except RealtimeError:
        # The error event has already been forwarded to the browser
        await websocket.close(code=CLOSE_INTERNAL_ERROR, reason="Connection to upstream failed")
        return

    browser_task = asyncio.create_task(pump_browser())
    upstream_task = asyncio.create_task(upstream_done.wait())
    try:
        await asyncio.wait({browser_task, upstream_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (browser_task, upstream_task):
            task.cancel()
        await asyncio.gather(browser_task, upstream_task, return_exceptions=True)
        await client.disconnect()
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=close_code["code"], reason=close_code["reason"])


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
