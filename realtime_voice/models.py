"""
Wire envelope models for the realtime conversational voice protocol.

Every frame exchanged with upstream is a flat JSON object with a ``type``
discriminator. Outbound commands and inbound server events are modelled
here as pydantic models; inbound types that are not modelled parse into
``UnknownEvent`` so new upstream events are never rejected.

Client-side lifecycle signals (``connected``, ``disconnected`` ...) share
the same base so subscribers see one event shape regardless of origin.
"""

import logging
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_serializer

from realtime_voice.audio import decode_audio

logger = logging.getLogger(__name__)

AudioFormat = Literal["pcm16", "g711_ulaw", "g711_alaw"]
Voice = Literal["alloy", "ash", "ballad", "coral", "echo", "sage", "shimmer", "verse"]
Modality = Literal["text", "audio"]
Role = Literal["user", "assistant", "system"]
ItemType = Literal["message", "function_call", "function_call_output"]
ToolChoice = Literal["auto", "none", "required"]
MaxTokens = Union[Annotated[int, Field(ge=1, le=4096)], Literal["inf"]]

WILDCARD = "*"

# Error codes upstream uses for a bad or missing credential
AUTH_ERROR_CODES = frozenset({"invalid_api_key", "authentication_error"})


class WireModel(BaseModel):
    """Base for everything that goes over the wire.

    Extra fields are kept so payloads survive a round trip untouched.
    Optional fields left at ``None`` are omitted on serialization, while a
    field explicitly set to ``None`` (e.g. ``turn_detection=None`` to turn
    server VAD off) is sent as ``null``.
    """

    model_config = ConfigDict(extra="allow")

    @model_serializer(mode="wrap")
    def _drop_unset_nulls(self, handler):
        data = handler(self)
        return {
            key: value
            for key, value in data.items()
            if value is not None or key in self.model_fields_set
        }

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")


# --- Session configuration ---

class TurnDetection(WireModel):
    """Server-side voice activity detection settings."""
    type: Literal["server_vad"] = "server_vad"
    threshold: float = Field(0.5, ge=0.0, le=1.0)
    prefix_padding_ms: int = Field(300, ge=0)
    silence_duration_ms: int = Field(500, ge=0)


class InputAudioTranscription(WireModel):
    model: str = "whisper-1"


class Tool(WireModel):
    type: Literal["function"] = "function"
    name: str
    description: Optional[str] = None
    parameters: Optional[dict[str, Any]] = None


class SessionConfig(WireModel):
    """Configuration sent with ``session.update``.

    Leave ``turn_detection`` unset to keep the upstream default, or set it
    to ``None`` to disable turn detection entirely.
    """
    modalities: Optional[list[Modality]] = None
    instructions: Optional[str] = None
    voice: Optional[Voice] = None
    input_audio_format: Optional[AudioFormat] = None
    output_audio_format: Optional[AudioFormat] = None
    input_audio_transcription: Optional[InputAudioTranscription] = None
    turn_detection: Optional[TurnDetection] = None
    tools: Optional[list[Tool]] = None
    tool_choice: Optional[ToolChoice] = None
    temperature: Optional[float] = Field(None, ge=0.6, le=1.2)
    max_response_output_tokens: Optional[MaxTokens] = None


# --- Conversation items ---

class ContentPart(WireModel):
    """One content part: input_text, input_audio, text or audio."""
    type: str
    text: Optional[str] = None
    audio: Optional[str] = None
    transcript: Optional[str] = None


class ConversationItem(WireModel):
    id: Optional[str] = None
    type: ItemType
    status: Optional[str] = None
    role: Optional[Role] = None
    content: Optional[list[ContentPart]] = None
    call_id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None
    output: Optional[str] = None


class ResponseOptions(WireModel):
    """Per-response overrides for ``response.create``."""
    modalities: Optional[list[Modality]] = None
    instructions: Optional[str] = None
    voice: Optional[Voice] = None
    output_audio_format: Optional[AudioFormat] = None
    tools: Optional[list[Tool]] = None
    tool_choice: Optional[ToolChoice] = None
    temperature: Optional[float] = Field(None, ge=0.6, le=1.2)
    max_output_tokens: Optional[MaxTokens] = None


# --- Outbound commands ---

class ClientCommand(WireModel):
    type: str
    event_id: Optional[str] = None


class SessionUpdateCommand(ClientCommand):
    type: Literal["session.update"] = "session.update"
    session: SessionConfig


class InputAudioBufferAppendCommand(ClientCommand):
    type: Literal["input_audio_buffer.append"] = "input_audio_buffer.append"
    audio: str


class InputAudioBufferCommitCommand(ClientCommand):
    type: Literal["input_audio_buffer.commit"] = "input_audio_buffer.commit"


class InputAudioBufferClearCommand(ClientCommand):
    type: Literal["input_audio_buffer.clear"] = "input_audio_buffer.clear"


class ConversationItemCreateCommand(ClientCommand):
    type: Literal["conversation.item.create"] = "conversation.item.create"
    previous_item_id: Optional[str] = None
    item: ConversationItem


class ConversationItemTruncateCommand(ClientCommand):
    type: Literal["conversation.item.truncate"] = "conversation.item.truncate"
    item_id: str
    content_index: int = Field(ge=0)
    audio_end_ms: int = Field(ge=0)


class ConversationItemDeleteCommand(ClientCommand):
    type: Literal["conversation.item.delete"] = "conversation.item.delete"
    item_id: str


class ResponseCreateCommand(ClientCommand):
    type: Literal["response.create"] = "response.create"
    response: Optional[ResponseOptions] = None


class ResponseCancelCommand(ClientCommand):
    type: Literal["response.cancel"] = "response.cancel"


# --- Events ---

class RealtimeEvent(WireModel):
    """Anything delivered to subscribers. ``type`` is the dispatch kind."""
    type: str


class ServerEvent(RealtimeEvent):
    event_id: Optional[str] = None


class UnknownEvent(ServerEvent):
    """Catch-all for event types this module does not model."""

    @property
    def payload(self) -> dict:
        return self.model_dump(mode="json")


class ErrorDetail(WireModel):
    type: Optional[str] = None
    code: Optional[str] = None
    message: Optional[str] = None
    param: Optional[str] = None
    event_id: Optional[str] = None


class SessionInfo(WireModel):
    """Session as echoed by upstream. Kept loose; upstream is authoritative."""
    id: Optional[str] = None
    model: Optional[str] = None


class SessionCreatedEvent(ServerEvent):
    type: Literal["session.created"] = "session.created"
    session: SessionInfo


class SessionUpdatedEvent(ServerEvent):
    type: Literal["session.updated"] = "session.updated"
    session: SessionInfo


class ConversationInfo(WireModel):
    id: Optional[str] = None


class ConversationCreatedEvent(ServerEvent):
    type: Literal["conversation.created"] = "conversation.created"
    conversation: ConversationInfo


class ConversationItemCreatedEvent(ServerEvent):
    type: Literal["conversation.item.created"] = "conversation.item.created"
    previous_item_id: Optional[str] = None
    item: ConversationItem


class ConversationItemTruncatedEvent(ServerEvent):
    type: Literal["conversation.item.truncated"] = "conversation.item.truncated"
    item_id: str
    content_index: int = 0
    audio_end_ms: int = 0


class ConversationItemDeletedEvent(ServerEvent):
    type: Literal["conversation.item.deleted"] = "conversation.item.deleted"
    item_id: str


class InputAudioBufferCommittedEvent(ServerEvent):
    type: Literal["input_audio_buffer.committed"] = "input_audio_buffer.committed"
    previous_item_id: Optional[str] = None
    item_id: Optional[str] = None


class InputAudioBufferClearedEvent(ServerEvent):
    type: Literal["input_audio_buffer.cleared"] = "input_audio_buffer.cleared"


class SpeechStartedEvent(ServerEvent):
    type: Literal["input_audio_buffer.speech_started"] = "input_audio_buffer.speech_started"
    audio_start_ms: Optional[int] = None
    item_id: Optional[str] = None


class SpeechStoppedEvent(ServerEvent):
    type: Literal["input_audio_buffer.speech_stopped"] = "input_audio_buffer.speech_stopped"
    audio_end_ms: Optional[int] = None
    item_id: Optional[str] = None


class TranscriptionCompletedEvent(ServerEvent):
    type: Literal["conversation.item.input_audio_transcription.completed"] = (
        "conversation.item.input_audio_transcription.completed"
    )
    item_id: Optional[str] = None
    content_index: int = 0
    transcript: str = ""


class TranscriptionFailedEvent(ServerEvent):
    type: Literal["conversation.item.input_audio_transcription.failed"] = (
        "conversation.item.input_audio_transcription.failed"
    )
    item_id: Optional[str] = None
    content_index: int = 0
    error: Optional[ErrorDetail] = None


class ResponseInfo(WireModel):
    id: Optional[str] = None
    status: Optional[str] = None
    status_details: Optional[dict[str, Any]] = None
    output: Optional[list[dict[str, Any]]] = None
    usage: Optional[dict[str, Any]] = None


class ResponseCreatedEvent(ServerEvent):
    type: Literal["response.created"] = "response.created"
    response: ResponseInfo


class ResponseDoneEvent(ServerEvent):
    type: Literal["response.done"] = "response.done"
    response: ResponseInfo


class OutputItemAddedEvent(ServerEvent):
    type: Literal["response.output_item.added"] = "response.output_item.added"
    response_id: Optional[str] = None
    output_index: int = 0
    item: ConversationItem


class OutputItemDoneEvent(ServerEvent):
    type: Literal["response.output_item.done"] = "response.output_item.done"
    response_id: Optional[str] = None
    output_index: int = 0
    item: ConversationItem


class _ContentEvent(ServerEvent):
    response_id: Optional[str] = None
    item_id: Optional[str] = None
    output_index: int = 0
    content_index: int = 0


class ContentPartAddedEvent(_ContentEvent):
    type: Literal["response.content_part.added"] = "response.content_part.added"
    part: Optional[ContentPart] = None


class ContentPartDoneEvent(_ContentEvent):
    type: Literal["response.content_part.done"] = "response.content_part.done"
    part: Optional[ContentPart] = None


class ResponseTextDeltaEvent(_ContentEvent):
    type: Literal["response.text.delta"] = "response.text.delta"
    delta: str = ""


class ResponseTextDoneEvent(_ContentEvent):
    type: Literal["response.text.done"] = "response.text.done"
    text: str = ""


class ResponseAudioTranscriptDeltaEvent(_ContentEvent):
    type: Literal["response.audio_transcript.delta"] = "response.audio_transcript.delta"
    delta: str = ""


class ResponseAudioTranscriptDoneEvent(_ContentEvent):
    type: Literal["response.audio_transcript.done"] = "response.audio_transcript.done"
    transcript: str = ""


class ResponseAudioDeltaEvent(_ContentEvent):
    type: Literal["response.audio.delta"] = "response.audio.delta"
    delta: str = ""

    @property
    def audio(self) -> bytes:
        """The decoded audio fragment."""
        return decode_audio(self.delta)


class ResponseAudioDoneEvent(_ContentEvent):
    type: Literal["response.audio.done"] = "response.audio.done"


class FunctionCallArgumentsDeltaEvent(ServerEvent):
    type: Literal["response.function_call_arguments.delta"] = "response.function_call_arguments.delta"
    response_id: Optional[str] = None
    item_id: Optional[str] = None
    output_index: int = 0
    call_id: Optional[str] = None
    delta: str = ""


class FunctionCallArgumentsDoneEvent(ServerEvent):
    type: Literal["response.function_call_arguments.done"] = "response.function_call_arguments.done"
    response_id: Optional[str] = None
    item_id: Optional[str] = None
    output_index: int = 0
    call_id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


class RateLimit(WireModel):
    name: str
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_seconds: Optional[float] = None


class RateLimitsUpdatedEvent(ServerEvent):
    type: Literal["rate_limits.updated"] = "rate_limits.updated"
    rate_limits: list[RateLimit] = Field(default_factory=list)


class ErrorEvent(ServerEvent):
    type: Literal["error"] = "error"
    error: ErrorDetail = Field(default_factory=ErrorDetail)

    @property
    def is_authentication_error(self) -> bool:
        return self.error.code in AUTH_ERROR_CODES


# --- Client-originated signals ---

class ConnectedEvent(RealtimeEvent):
    type: Literal["connected"] = "connected"


class DisconnectedEvent(RealtimeEvent):
    type: Literal["disconnected"] = "disconnected"
    code: int = 1000
    reason: str = ""


class AuthenticationErrorEvent(RealtimeEvent):
    type: Literal["authentication_error"] = "authentication_error"
    code: Optional[Union[int, str]] = None
    message: str = "Authentication failed"


class ReconnectingEvent(RealtimeEvent):
    type: Literal["reconnecting"] = "reconnecting"
    attempt: int
    delay_ms: int


class ReconnectFailedEvent(RealtimeEvent):
    type: Literal["reconnect_failed"] = "reconnect_failed"
    attempts: int


class RemoteAudioTrackEvent(RealtimeEvent):
    """Carries a playable media track handle from a peer connection."""
    type: Literal["remote_audio_track"] = "remote_audio_track"
    track: Any = None


SERVER_EVENT_MODELS: dict[str, type[ServerEvent]] = {
    model.model_fields["type"].default: model
    for model in (
        SessionCreatedEvent,
        SessionUpdatedEvent,
        ConversationCreatedEvent,
        ConversationItemCreatedEvent,
        ConversationItemTruncatedEvent,
        ConversationItemDeletedEvent,
        InputAudioBufferCommittedEvent,
        InputAudioBufferClearedEvent,
        SpeechStartedEvent,
        SpeechStoppedEvent,
        TranscriptionCompletedEvent,
        TranscriptionFailedEvent,
        ResponseCreatedEvent,
        ResponseDoneEvent,
        OutputItemAddedEvent,
        OutputItemDoneEvent,
        ContentPartAddedEvent,
        ContentPartDoneEvent,
        ResponseTextDeltaEvent,
        ResponseTextDoneEvent,
        ResponseAudioTranscriptDeltaEvent,
        ResponseAudioTranscriptDoneEvent,
        ResponseAudioDeltaEvent,
        ResponseAudioDoneEvent,
        FunctionCallArgumentsDeltaEvent,
        FunctionCallArgumentsDoneEvent,
        RateLimitsUpdatedEvent,
        ErrorEvent,
    )
}


def parse_server_event(data: dict) -> ServerEvent:
    """
    Turn a decoded frame into a typed event.

    Unmodelled types, and known types whose payload does not match the
    model, come back as ``UnknownEvent`` under their raw ``type``.

    Raises:
        ValueError: if the frame is not an object with a string ``type``.
    """
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ValueError("frame is not an object with a string 'type'")

    model = SERVER_EVENT_MODELS.get(data["type"])
    if model is None:
        return UnknownEvent.model_validate(data)

    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning("Event %s did not match its model, forwarding raw: %s", data["type"], e)
        return UnknownEvent.model_validate(data)
