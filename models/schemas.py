"""
Core data models for the voice session client.
These are the wire types and session snapshots shared across all modules.
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class VoiceState(str, Enum):
    IDLE = "idle"                 # not connected
    CONNECTING = "connecting"     # establishing connection
    CONNECTED = "connected"       # connected, waiting for init reply
    READY = "ready"               # initialized, ready to send audio
    PROCESSING = "processing"     # STT → RAG → TTS running server-side
    SPEAKING = "speaking"         # response audio delivered
    ERROR = "error"


class ProcessingStage(str, Enum):
    STT = "stt"
    RAG = "rag"
    TTS = "tts"


# ──────────────────────────────────────────────────────────────
#  Client → Server messages
# ──────────────────────────────────────────────────────────────

class InitMessage(BaseModel):
    action: Literal["init"] = "init"
    thread_id: str
    audio_format: str = "wav"


class AudioMessage(BaseModel):
    action: Literal["audio"] = "audio"
    data: str                                  # base64-encoded audio file


class PingMessage(BaseModel):
    action: Literal["ping"] = "ping"


ClientMessage = Union[InitMessage, AudioMessage, PingMessage]


def serialize_client_message(message: ClientMessage) -> str:
    """Render an outbound message as a JSON text frame."""
    return json.dumps(message.model_dump(mode="json"))


# ──────────────────────────────────────────────────────────────
#  Server → Client events
# ──────────────────────────────────────────────────────────────

class InitializedEvent(BaseModel):
    event: Literal["initialized"] = "initialized"
    thread_id: str
    kb_id: str = ""


class SttStartEvent(BaseModel):
    event: Literal["stt_start"] = "stt_start"


class SttCompleteEvent(BaseModel):
    event: Literal["stt_complete"] = "stt_complete"
    text: str


class RagStartEvent(BaseModel):
    event: Literal["rag_start"] = "rag_start"


class RagTokenEvent(BaseModel):
    event: Literal["rag_token"] = "rag_token"
    token: str


class RagCompleteEvent(BaseModel):
    event: Literal["rag_complete"] = "rag_complete"
    text: str


class TtsStartEvent(BaseModel):
    event: Literal["tts_start"] = "tts_start"


class TtsCompleteEvent(BaseModel):
    event: Literal["tts_complete"] = "tts_complete"
    audio: str                                 # base64-encoded audio file
    format: str = "wav"


class DoneEvent(BaseModel):
    event: Literal["done"] = "done"
    duration: float = 0.0                      # server-side turn duration (ms)


class ErrorEvent(BaseModel):
    event: Literal["error"] = "error"
    message: str = ""


class PongEvent(BaseModel):
    event: Literal["pong"] = "pong"


ServerEvent = Annotated[
    Union[
        InitializedEvent,
        SttStartEvent,
        SttCompleteEvent,
        RagStartEvent,
        RagTokenEvent,
        RagCompleteEvent,
        TtsStartEvent,
        TtsCompleteEvent,
        DoneEvent,
        ErrorEvent,
        PongEvent,
    ],
    Field(discriminator="event"),
]

_server_event_adapter: TypeAdapter = TypeAdapter(ServerEvent)


def parse_server_event(raw: Union[str, bytes]) -> Any:
    """
    Parse one inbound JSON frame into its ServerEvent model.

    Raises ValueError for invalid JSON, unknown `event` tags and
    missing or mistyped fields.
    """
    try:
        return _server_event_adapter.validate_json(raw)
    except ValidationError as e:
        raise ValueError(f"invalid server event: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e


# ──────────────────────────────────────────────────────────────
#  Session snapshot
# ──────────────────────────────────────────────────────────────

class VoiceSession(BaseModel):
    """
    Data for one initialized voice session.

    Turn fields hold only the latest turn; each new value overwrites the
    previous one.
    """
    thread_id: str
    kb_id: str = ""
    state: VoiceState = VoiceState.READY
    processing_stage: Optional[ProcessingStage] = None
    transcribed_text: Optional[str] = None
    ai_response: Optional[str] = None
    audio_response: Optional[str] = None
    audio_format: Optional[str] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Audio
# ──────────────────────────────────────────────────────────────

class EncodedAudio(BaseModel):
    """A complete single-file audio object (e.g. one WAV file)."""
    data: bytes
    mime_type: str = "audio/wav"

    @property
    def size(self) -> int:
        return len(self.data)


FORMAT_MIME_TYPES: dict[str, str] = {
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
    "webm": "audio/webm",
}


def mime_type_for(audio_format: str) -> str:
    """Map a wire `format` value to a MIME type, defaulting to WAV."""
    return FORMAT_MIME_TYPES.get((audio_format or "").lower(), "audio/wav")
