"""
Error hierarchy for the voice session client.

Connection-level errors are published on the transport event stream;
capture and playback errors are raised from the calling operation.
"""
from __future__ import annotations


class VoiceClientError(Exception):
    """Base exception for all voice client operations."""

    def __init__(self, message: str, fatal: bool = False):
        self.message = message
        self.fatal = fatal
        super().__init__(message)


# ── Transport ─────────────────────────────────────────────────

class VoiceConnectionError(VoiceClientError, ConnectionError):
    """The connection failed to open or closed unexpectedly."""


class ReconnectExhausted(VoiceClientError):
    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Failed to reconnect to server after {attempts} attempts", fatal=True)


class ProtocolError(VoiceClientError):
    """An inbound message could not be parsed. Never fatal."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(message)


class StateError(VoiceClientError):
    """Operation attempted in a state that does not allow it."""


class NotConnected(StateError):
    def __init__(self, state: str = ""):
        self.state = state
        super().__init__(f"Not connected to server (state: {state or 'unknown'})")


# ── Capture ───────────────────────────────────────────────────

class CaptureError(VoiceClientError):
    """Microphone capture failed."""


class PermissionDenied(CaptureError):
    def __init__(self, detail: str = ""):
        message = "Microphone access denied or not available"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class AlreadyRecording(CaptureError):
    def __init__(self):
        super().__init__("A recording is already in progress")


class NotRecording(CaptureError):
    def __init__(self):
        super().__init__("No recording in progress")


# ── Playback ──────────────────────────────────────────────────

class PlaybackError(VoiceClientError):
    """Decoding or playing response audio failed."""


class AudioDecodeError(PlaybackError):
    pass
