"""
Session State Machine — the voice session transition table.

Every state change of a SessionTransport goes through `apply_trigger`.
Triggers are either inbound server event tags ("initialized", "done", ...)
or transport triggers (see `Trigger`). A (state, trigger) pair missing from
the table leaves the state unchanged.

    idle → connecting → connected → ready → processing → speaking → ready
    any  → error   (server error event, failed open, reconnect exhausted)
    any  → idle    (disconnect, unexpected close unless already in error)
"""
from __future__ import annotations

import structlog
from enum import Enum
from typing import Optional

from models.schemas import VoiceState

logger = structlog.get_logger()

S = VoiceState


class Trigger(str, Enum):
    """Transport-side triggers. Server events use their wire tag."""
    CONNECT = "connect"
    OPENED = "opened"
    INIT_SENT = "init_sent"
    AUDIO_SENT = "audio_sent"
    OPEN_FAILED = "open_failed"
    CLOSED = "closed"
    RECONNECT_EXHAUSTED = "reconnect_exhausted"
    DISCONNECT = "disconnect"


ALL_STATES = frozenset(VoiceState)

# (from_states, trigger) → to_state
_TABLE: list[tuple[frozenset, str, VoiceState]] = [
    (frozenset({S.IDLE, S.ERROR}), Trigger.CONNECT.value, S.CONNECTING),
    (frozenset({S.CONNECTING}), Trigger.OPENED.value, S.CONNECTED),
    (frozenset({S.CONNECTED}), Trigger.INIT_SENT.value, S.CONNECTED),
    (frozenset({S.CONNECTED}), "initialized", S.READY),
    (frozenset({S.READY}), Trigger.AUDIO_SENT.value, S.PROCESSING),
    (frozenset({S.READY, S.PROCESSING}), "stt_start", S.PROCESSING),
    (frozenset({S.READY, S.PROCESSING}), "rag_start", S.PROCESSING),
    (frozenset({S.READY, S.PROCESSING}), "tts_start", S.PROCESSING),
    (frozenset({S.PROCESSING}), "tts_complete", S.SPEAKING),
    (frozenset({S.SPEAKING, S.PROCESSING, S.READY}), "done", S.READY),
    (ALL_STATES, "error", S.ERROR),
    (ALL_STATES, Trigger.OPEN_FAILED.value, S.ERROR),
    (ALL_STATES - {S.ERROR}, Trigger.CLOSED.value, S.IDLE),
    (ALL_STATES, Trigger.RECONNECT_EXHAUSTED.value, S.ERROR),
    (ALL_STATES, Trigger.DISCONNECT.value, S.IDLE),
]

TRANSITIONS: dict[tuple[VoiceState, str], VoiceState] = {
    (from_state, trigger): to_state
    for from_states, trigger, to_state in _TABLE
    for from_state in from_states
}


class TransitionResult:
    """Outcome of applying a trigger to the current state."""

    def __init__(self, from_state: VoiceState, to_state: VoiceState, trigger: str, matched: bool):
        self.from_state = from_state
        self.to_state = to_state
        self.trigger = trigger
        self.matched = matched

    @property
    def changed(self) -> bool:
        return self.matched and self.from_state != self.to_state

    def __bool__(self):
        return self.changed

    def __repr__(self):
        if self.changed:
            return f"<Transition {self.from_state.value} → {self.to_state.value} on {self.trigger}>"
        return f"<NoTransition {self.from_state.value} on {self.trigger}>"


def _trigger_value(trigger) -> str:
    return trigger.value if isinstance(trigger, Trigger) else str(trigger)


def next_state(current: VoiceState, trigger) -> Optional[VoiceState]:
    """Look up the target state, or None when the table has no entry."""
    return TRANSITIONS.get((current, _trigger_value(trigger)))


def apply_trigger(current: VoiceState, trigger) -> TransitionResult:
    value = _trigger_value(trigger)
    target = TRANSITIONS.get((current, value))
    if target is None:
        logger.debug("voice_transition_ignored", state=current.value, trigger=value)
        return TransitionResult(current, current, value, matched=False)
    return TransitionResult(current, target, value, matched=True)
