import pytest
from pydantic import ValidationError

from realtime_voice.models import (
    AuthenticationErrorEvent,
    ConversationItemTruncateCommand,
    ErrorEvent,
    InputAudioTranscription,
    ResponseAudioDeltaEvent,
    ResponseDoneEvent,
    SessionConfig,
    SessionCreatedEvent,
    SessionUpdateCommand,
    TurnDetection,
    UnknownEvent,
    parse_server_event,
)


def test_session_config_omits_unset_fields():
    """Only fields the caller set should go over the wire."""
    config = SessionConfig(voice="coral", instructions="Be brief")

    assert config.to_wire() == {"voice": "coral", "instructions": "Be brief"}


def test_session_config_explicit_none_is_sent_as_null():
    """turn_detection=None disables server VAD and must be sent as null."""
    command = SessionUpdateCommand(session=SessionConfig(turn_detection=None))

    assert command.to_wire() == {"type": "session.update", "session": {"turn_detection": None}}


def test_turn_detection_defaults():
    detection = TurnDetection()

    assert detection.to_wire() == {
        "type": "server_vad",
        "threshold": 0.5,
        "prefix_padding_ms": 300,
        "silence_duration_ms": 500,
    }


def test_nested_session_fields_serialize():
    config = SessionConfig(
        input_audio_transcription=InputAudioTranscription(),
        turn_detection=TurnDetection(silence_duration_ms=200),
        max_response_output_tokens="inf",
    )

    wire = config.to_wire()
    assert wire["input_audio_transcription"] == {"model": "whisper-1"}
    assert wire["turn_detection"]["silence_duration_ms"] == 200
    assert wire["max_response_output_tokens"] == "inf"


@pytest.mark.parametrize("temperature", [0.5, 1.3])
def test_temperature_out_of_range_rejected(temperature):
    with pytest.raises(ValidationError):
        SessionConfig(temperature=temperature)


@pytest.mark.parametrize("max_tokens", [0, 4097, "lots"])
def test_max_output_tokens_bounds(max_tokens):
    with pytest.raises(ValidationError):
        SessionConfig(max_response_output_tokens=max_tokens)


def test_max_output_tokens_accepts_limit():
    assert SessionConfig(max_response_output_tokens=4096).max_response_output_tokens == 4096


def test_vad_threshold_bounds():
    with pytest.raises(ValidationError):
        TurnDetection(threshold=1.5)


def test_unknown_voice_rejected():
    with pytest.raises(ValidationError):
        SessionConfig(voice="robot")


def test_truncate_rejects_negative_offsets():
    with pytest.raises(ValidationError):
        ConversationItemTruncateCommand(item_id="item_1", content_index=0, audio_end_ms=-1)


def test_parse_known_event():
    event = parse_server_event({
        "type": "session.created",
        "event_id": "evt_1",
        "session": {"id": "sess_1", "model": "gpt-4o-realtime-preview", "voice": "alloy"},
    })

    assert isinstance(event, SessionCreatedEvent)
    assert event.session.id == "sess_1"
    # Fields not modelled are kept
    assert event.session.model_extra["voice"] == "alloy"


def test_parse_unknown_event_keeps_payload():
    event = parse_server_event({"type": "output_audio_buffer.stopped", "response_id": "resp_1"})

    assert isinstance(event, UnknownEvent)
    assert event.type == "output_audio_buffer.stopped"
    assert event.payload == {"type": "output_audio_buffer.stopped", "response_id": "resp_1"}


def test_parse_mismatched_known_event_falls_back():
    """A known type with a payload that does not fit its model is forwarded raw."""
    event = parse_server_event({"type": "session.created", "session": "not-an-object"})

    assert isinstance(event, UnknownEvent)
    assert event.type == "session.created"


@pytest.mark.parametrize("frame", [[], "text", {"no_type": True}, {"type": 5}])
def test_parse_rejects_frames_without_type(frame):
    with pytest.raises(ValueError):
        parse_server_event(frame)


def test_audio_delta_decodes_bytes():
    event = parse_server_event({
        "type": "response.audio.delta",
        "response_id": "resp_1",
        "item_id": "item_1",
        "delta": "AAECAw==",
    })

    assert isinstance(event, ResponseAudioDeltaEvent)
    assert event.audio == b"\x00\x01\x02\x03"


def test_response_done_usage():
    event = parse_server_event({
        "type": "response.done",
        "response": {"id": "resp_1", "status": "completed", "usage": {"total_tokens": 9}},
    })

    assert isinstance(event, ResponseDoneEvent)
    assert event.response.usage == {"total_tokens": 9}


@pytest.mark.parametrize("code,expected", [
    ("invalid_api_key", True),
    ("authentication_error", True),
    ("rate_limit_exceeded", False),
    (None, False),
])
def test_error_event_authentication_classification(code, expected):
    event = ErrorEvent.model_validate({"type": "error", "error": {"code": code, "message": "m"}})

    assert event.is_authentication_error is expected


def test_error_event_without_detail():
    event = parse_server_event({"type": "error"})

    assert isinstance(event, ErrorEvent)
    assert event.error.code is None


def test_authentication_error_event_defaults():
    event = AuthenticationErrorEvent()

    assert event.type == "authentication_error"
    assert event.message == "Authentication failed"
