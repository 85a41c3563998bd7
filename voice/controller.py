"""
Voice Session Controller — one push-to-talk conversation over a voice session.

Composes the three owned resources:
- AudioCapture:     microphone, held only while recording
- SessionTransport: the WebSocket session and its state machine
- AudioPlayer:      response playback, one clip at a time

An event pump consumes the transport's event stream and turns server
events into controller state, hook calls and playback. Hooks may be plain
functions or coroutines.

Usage:
    async with VoiceSessionController(settings, on_response=print) as voice:
        await voice.connect()
        await voice.wait_ready()
        await voice.start_recording()
        ...
        await voice.stop_recording()      # sends the utterance
"""
from __future__ import annotations

import asyncio
import inspect
import structlog
from typing import Any, Callable, Optional

from config.settings import Settings
from models.schemas import VoiceSession, VoiceState, mime_type_for
from voice.capture import AudioCapture
from voice.errors import CaptureError, NotConnected, PlaybackError, VoiceClientError
from voice.events import ServerEventReceived, SessionError, StateChanged, Subscription
from voice.latency import LatencyBudget, TurnLatencyTracker
from voice.playback import AudioPlayer, PlaybackHandle
from voice.state_machine import Trigger
from voice.transport import SessionTransport

logger = structlog.get_logger()

Hook = Optional[Callable[..., Any]]


class VoiceSessionController:

    def __init__(
        self,
        settings: Settings = None,
        *,
        capture: Optional[AudioCapture] = None,
        transport: Optional[SessionTransport] = None,
        player: Optional[AudioPlayer] = None,
        latency: Optional[TurnLatencyTracker] = None,
        auto_connect: Optional[bool] = None,
        on_transcription: Hook = None,
        on_response_token: Hook = None,
        on_response: Hook = None,
        on_audio_ready: Hook = None,
        on_error: Hook = None,
    ):
        self.settings = settings or Settings()
        self.capture = capture or AudioCapture(self.settings.capture)
        self.transport = transport or SessionTransport(self.settings.session)
        self.player = player or AudioPlayer(self.settings.playback)
        self.latency = latency or TurnLatencyTracker(LatencyBudget.from_config(self.settings.latency))
        self.auto_connect = self.settings.auto_connect if auto_connect is None else auto_connect

        self.on_transcription = on_transcription
        self.on_response_token = on_response_token
        self.on_response = on_response
        self.on_audio_ready = on_audio_ready
        self.on_error = on_error

        self._events: Optional[Subscription] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._transcribed_text: Optional[str] = None
        self._ai_response: Optional[str] = None
        self._error: Optional[str] = None
        self._closed = False

    # ── Snapshots ─────────────────────────────────────────────

    @property
    def state(self) -> VoiceState:
        return self.transport.state

    @property
    def session(self) -> Optional[VoiceSession]:
        return self.transport.session

    @property
    def is_recording(self) -> bool:
        return self.capture.is_recording

    @property
    def is_processing(self) -> bool:
        return self.transport.state is VoiceState.PROCESSING

    @property
    def is_speaking(self) -> bool:
        return self.transport.state is VoiceState.SPEAKING

    @property
    def is_playing(self) -> bool:
        """Whether a reply clip is still on the output device."""
        return self.player.is_playing

    @property
    def transcribed_text(self) -> Optional[str]:
        return self._transcribed_text

    @property
    def ai_response(self) -> Optional[str]:
        return self._ai_response

    @property
    def error(self) -> Optional[str]:
        return self._error

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Start the event pump, and connect when auto-connect is on."""
        self._ensure_pump()
        if self.auto_connect:
            await self.connect()

    async def connect(self) -> None:
        """Open the session connection. Failures call `on_error` and re-raise."""
        self._ensure_pump()
        try:
            await self.transport.connect()
        except VoiceClientError as e:
            # on_error is called by the pump from the published SessionError
            self._error = e.message
            raise

    async def wait_ready(self, timeout: Optional[float] = None) -> VoiceSession:
        return await self.transport.wait_ready(timeout)

    async def disconnect(self) -> None:
        if self.capture.is_recording:
            try:
                await self.capture.stop_recording()
            except CaptureError as e:
                logger.warning("voice_recording_discarded", error=e.message)
        await self.transport.disconnect()
        self.latency.reset_pending()

    async def aclose(self) -> None:
        """Disconnect, then stop playback. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        await self.disconnect()
        await self.player.stop()

        events, self._events = self._events, None
        if events is not None:
            events.close()
        pump, self._pump_task = self._pump_task, None
        if pump is not None and not pump.done():
            try:
                await asyncio.wait_for(pump, timeout=1.0)
            except asyncio.TimeoutError:
                logger.warning("voice_event_pump_stuck")
        logger.info("voice_controller_closed", latency=self.latency.to_dict())

    async def __aenter__(self) -> "VoiceSessionController":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ── Recording ─────────────────────────────────────────────

    async def start_recording(self) -> None:
        """Open the microphone for one utterance. Requires a ready session."""
        if self.transport.state is not VoiceState.READY:
            error = NotConnected(self.transport.state.value)
            await self._report(error.message)
            raise error

        self._transcribed_text = None
        self._ai_response = None
        self._error = None

        try:
            await self.capture.start_recording()
        except CaptureError as e:
            await self._report(e.message)
            raise

    async def stop_recording(self) -> bool:
        """Finish the utterance and send it. Returns whether it was sent."""
        try:
            audio = await self.capture.stop_recording()
        except CaptureError as e:
            await self._report(e.message)
            raise

        payload = self.capture.encode_for_transport(audio)
        sent = await self.transport.send_audio(payload)
        logger.info("voice_utterance_finished", bytes=audio.size, sent=sent)
        return sent

    # ── Playback ──────────────────────────────────────────────

    async def play_audio(self, encoded_audio: str, audio_format: str = "wav") -> PlaybackHandle:
        """Decode a base64 response clip and play it, stopping any current clip."""
        try:
            audio = self.capture.decode_from_transport(encoded_audio, mime_type_for(audio_format))
            handle = await self.player.play(audio)
        except PlaybackError as e:
            await self._report(e.message)
            raise
        await self._call(self.on_audio_ready, audio)
        return handle

    async def stop_audio(self) -> None:
        await self.player.stop()

    # ── Event pump ────────────────────────────────────────────

    def _ensure_pump(self) -> None:
        if self._pump_task is not None and not self._pump_task.done():
            return
        if self._events is None:
            self._events = self.transport.events()
        self._closed = False
        self._pump_task = asyncio.create_task(self._pump(self._events), name="voice_event_pump")

    async def _pump(self, events: Subscription) -> None:
        async for item in events:
            try:
                if isinstance(item, StateChanged):
                    self._on_state_changed(item)
                elif isinstance(item, ServerEventReceived):
                    await self._on_server_event(item.event)
                elif isinstance(item, SessionError):
                    await self._report(item.message)
            except Exception as e:
                # one bad item must not stop the pump
                logger.error("voice_event_handling_failed",
                             item=type(item).__name__, error=str(e), error_type=type(e).__name__)

    def _on_state_changed(self, change: StateChanged) -> None:
        if change.trigger == Trigger.AUDIO_SENT.value:
            self.latency.on_event("audio_sent")
        elif change.new is VoiceState.IDLE:
            self.latency.reset_pending()

    async def _on_server_event(self, event: Any) -> None:
        tag = event.event
        self.latency.on_event(tag)

        if tag == "stt_complete":
            self._transcribed_text = event.text
            await self._call(self.on_transcription, event.text)
        elif tag == "rag_token":
            await self._call(self.on_response_token, event.token)
        elif tag == "rag_complete":
            self._ai_response = event.text
            await self._call(self.on_response, event.text)
        elif tag == "tts_complete":
            try:
                await self.play_audio(event.audio, event.format)
            except PlaybackError:
                pass                        # already reported through on_error
        elif tag == "done":
            logger.info("voice_turn_complete", server_duration_ms=event.duration)
        elif tag == "error":
            await self._report(event.message)

    # ── Hooks ─────────────────────────────────────────────────

    async def _report(self, message: str) -> None:
        self._error = message
        logger.error("voice_session_error", error=message, state=self.transport.state.value)
        await self._call(self.on_error, message)

    async def _call(self, hook: Hook, *args) -> None:
        if hook is None:
            return
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # a failing hook must not stop the event pump
            logger.error("voice_hook_failed", hook=getattr(hook, "__name__", repr(hook)), error=str(e))
