"""
Voice Session Client — push-to-talk voice conversations over WebSocket.

Modules:
- capture: microphone recording into WAV, transport encoding
- playback: owned response playback, one clip at a time
- state_machine: session transition table
- events: ordered session event channel
- transport: WebSocket session, heartbeat and reconnection
- latency: per-stage turn timing against budgets
- controller: composes capture, transport and playback
"""
from voice.errors import (
    VoiceClientError, VoiceConnectionError, ReconnectExhausted, ProtocolError,
    StateError, NotConnected,
    CaptureError, PermissionDenied, AlreadyRecording, NotRecording,
    PlaybackError, AudioDecodeError,
)
from voice.capture import AudioCapture, encode_for_transport, decode_from_transport
from voice.playback import AudioPlayer, PlaybackHandle
from voice.state_machine import Trigger, TransitionResult, apply_trigger, next_state
from voice.events import StateChanged, ServerEventReceived, SessionError, EventChannel, Subscription
from voice.transport import SessionTransport
from voice.latency import TurnStage, LatencyBudget, TurnLatencyTracker, StageWindow, StageSummary
from voice.controller import VoiceSessionController

__all__ = [
    "VoiceClientError", "VoiceConnectionError", "ReconnectExhausted", "ProtocolError",
    "StateError", "NotConnected",
    "CaptureError", "PermissionDenied", "AlreadyRecording", "NotRecording",
    "PlaybackError", "AudioDecodeError",
    "AudioCapture", "encode_for_transport", "decode_from_transport",
    "AudioPlayer", "PlaybackHandle",
    "Trigger", "TransitionResult", "apply_trigger", "next_state",
    "StateChanged", "ServerEventReceived", "SessionError", "EventChannel", "Subscription",
    "SessionTransport",
    "TurnStage", "LatencyBudget", "TurnLatencyTracker", "StageWindow", "StageSummary",
    "VoiceSessionController",
]
