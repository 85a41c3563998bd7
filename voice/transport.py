"""
Session Transport — owns the WebSocket connection for one voice session.

Responsibilities:
1. Opens the connection and sends `init` as soon as it is open
2. Drives the session state machine from transport triggers and server events
3. Sends a `ping` every heartbeat interval while the session is live
4. Reconnects after unexpected closes with bounded exponential backoff
5. Publishes state changes, server events and connection errors, in order,
   on a single event channel

`connect()` returns once the connection is open. Use `wait_ready()` to wait
for the server's `initialized` reply.

Heartbeat and reconnection run as tasks owned by the transport. At most one
of each exists at a time, and `disconnect()` cancels both exactly once.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from config.settings import SessionConfig
from models.schemas import (
    AudioMessage, ClientMessage, InitMessage, PingMessage, ProcessingStage,
    VoiceSession, VoiceState, parse_server_event, serialize_client_message,
)
from voice.errors import (
    NotConnected, ProtocolError, ReconnectExhausted, StateError,
    VoiceClientError, VoiceConnectionError,
)
from voice.events import EventChannel, ServerEventReceived, SessionError, StateChanged, Subscription
from voice.state_machine import Trigger, TransitionResult, apply_trigger

logger = structlog.get_logger()

Connector = Callable[..., Awaitable[Any]]
Sleep = Callable[[float], Awaitable[None]]

HEARTBEAT_STATES = frozenset({
    VoiceState.CONNECTED, VoiceState.READY, VoiceState.PROCESSING, VoiceState.SPEAKING,
})

_STAGE_STARTS = {
    "stt_start": ProcessingStage.STT,
    "rag_start": ProcessingStage.RAG,
    "tts_start": ProcessingStage.TTS,
}


async def websocket_connector(url: str, *, open_timeout: float, max_size: int) -> Any:
    """Open a client WebSocket. Keep-alive is done with protocol pings, not WS pings."""
    return await websockets.connect(
        url,
        open_timeout=open_timeout,
        max_size=max_size,
        ping_interval=None,
    )


class SessionTransport:
    """
    One logical voice session over a (re)connectable WebSocket.

    Usage:
        transport = SessionTransport(SessionConfig(url=..., thread_id=...))
        stream = transport.events()
        await transport.connect()
        await transport.wait_ready(timeout=10)
        await transport.send_audio(base64_wav)
        ...
        await transport.disconnect()
    """

    def __init__(
        self,
        config: SessionConfig,
        connector: Optional[Connector] = None,
        sleep: Optional[Sleep] = None,
    ):
        self.config = config
        self._connector = connector or websocket_connector
        self._sleep = sleep or asyncio.sleep
        self._channel = EventChannel()

        self._ws: Any = None
        self._state = VoiceState.IDLE
        self._session: Optional[VoiceSession] = None
        self._last_error: Optional[str] = None
        self._closing = False

        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0

        self._state_event = asyncio.Event()
        self._pings_sent = 0
        self._last_pong_at: Optional[float] = None

    # ── Snapshots ─────────────────────────────────────────────

    @property
    def state(self) -> VoiceState:
        return self._state

    @property
    def session(self) -> Optional[VoiceSession]:
        """A copy of the live session, or None before `initialized`."""
        return self._session.model_copy() if self._session else None

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    @property
    def is_ready(self) -> bool:
        return self._state is VoiceState.READY

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def has_pending_reconnect(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def heartbeat_active(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    @property
    def pings_sent(self) -> int:
        return self._pings_sent

    @property
    def last_pong_at(self) -> Optional[float]:
        return self._last_pong_at

    def events(self) -> Subscription:
        """Subscribe to the ordered stream of session events."""
        return self._channel.subscribe()

    def reconnect_delay_ms(self, attempt: int) -> int:
        return min(
            self.config.reconnect_base_delay_ms * (2 ** attempt),
            self.config.reconnect_max_delay_ms,
        )

    # ── Connection lifecycle ──────────────────────────────────

    async def connect(self) -> None:
        """
        Open the connection, send `init` and start the heartbeat.

        Returns when the connection is open, not when the session is ready.
        Raises VoiceConnectionError if the connection cannot be opened.
        A connection left open by a server `error` is replaced.
        """
        if self._state is VoiceState.CONNECTING:
            logger.warning("voice_ws_connect_in_progress", url=self.config.url)
            return
        if self._ws is not None:
            if self._state is not VoiceState.ERROR:
                logger.warning("voice_ws_already_connected", url=self.config.url, state=self._state.value)
                return
            logger.info("voice_ws_replacing_connection", last_error=self._last_error)
        await self._teardown()
        self._closing = False
        await self._open(reconnecting=False)

    async def disconnect(self) -> None:
        """Tear everything down and force `idle`. Safe to call repeatedly."""
        self._closing = True
        await self._teardown()
        self._transition(Trigger.DISCONNECT)

    async def _teardown(self) -> None:
        await self._cancel_reconnect()
        await self._stop_heartbeat()

        reader, self._reader_task = self._reader_task, None
        await self._cancel_task(reader)

        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_quietly(ws)
            logger.info("voice_ws_disconnected", url=self.config.url)

        self._session = None
        self._reconnect_attempts = 0

    async def aclose(self) -> None:
        """Disconnect and end every event subscription."""
        await self.disconnect()
        self._channel.close()

    async def wait_ready(self, timeout: Optional[float] = None) -> VoiceSession:
        """
        Wait until the session reaches `ready`.

        Raises StateError if the session lands in `idle` or `error` first,
        asyncio.TimeoutError when `timeout` elapses.
        """
        async def _wait() -> VoiceSession:
            while True:
                if self._state is VoiceState.READY and self._session is not None:
                    return self.session
                if self._state is VoiceState.ERROR:
                    raise StateError(self._last_error or "Session failed before becoming ready")
                if self._state is VoiceState.IDLE:
                    raise NotConnected(self._state.value)
                await self._state_event.wait()

        return await asyncio.wait_for(_wait(), timeout)

    async def _open(self, reconnecting: bool) -> None:
        self._transition(Trigger.CONNECT)
        url = self.config.url
        logger.info("voice_ws_connecting", url=url, reconnecting=reconnecting,
                    attempt=self._reconnect_attempts)

        try:
            ws = await self._connector(
                url,
                open_timeout=self.config.open_timeout_s,
                max_size=self.config.max_message_bytes,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            if reconnecting:
                logger.warning("voice_ws_reconnect_failed", url=url, error=str(e),
                               attempt=self._reconnect_attempts)
                self._transition(Trigger.CLOSED)
                self._schedule_reconnect()
                return
            error = VoiceConnectionError(f"Failed to connect to {url}: {e}", fatal=True)
            logger.error("voice_ws_connect_failed", url=url, error=str(e))
            self._fail(error, Trigger.OPEN_FAILED)
            raise error from e

        if self._closing:
            # disconnect() ran while the handshake was in flight
            await self._close_quietly(ws)
            return

        self._ws = ws
        self._reconnect_attempts = 0
        self._transition(Trigger.OPENED)
        logger.info("voice_ws_connected", url=url)

        if await self._send(InitMessage(
            thread_id=self.config.thread_id,
            audio_format=self.config.audio_format,
        )):
            self._transition(Trigger.INIT_SENT)

        self._start_heartbeat()
        self._reader_task = asyncio.create_task(self._read_loop(ws), name="voice_ws_reader")

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    self._handle_message(raw)
                except Exception as e:
                    # one bad frame must not end the session
                    logger.error("voice_message_handler_failed",
                                 error=str(e), error_type=type(e).__name__)
        except ConnectionClosed as e:
            logger.info("voice_ws_closed", code=_close_code(e), reason=_close_reason(e))
        except Exception as e:
            logger.error("voice_ws_reader_failed", error=str(e), error_type=type(e).__name__)
            await self._close_quietly(ws)
        # a cancelled reader never gets here
        if ws is self._ws:
            await self._on_connection_lost()

    async def _on_connection_lost(self) -> None:
        self._ws = None
        self._session = None
        self._reader_task = None
        await self._stop_heartbeat()

        if self._closing:
            return
        if self._state is VoiceState.ERROR:
            # error is only left through an explicit connect()
            logger.info("voice_ws_closed_in_error", last_error=self._last_error)
            return

        self._transition(Trigger.CLOSED)
        self._schedule_reconnect()

    # ── Reconnection ──────────────────────────────────────────

    def _schedule_reconnect(self) -> None:
        if not self.config.auto_reconnect:
            logger.warning("voice_ws_closed_unexpectedly", url=self.config.url)
            self._channel.publish(SessionError(
                VoiceConnectionError("Connection closed unexpectedly"),
                state=self._state,
            ))
            return

        if self._reconnect_attempts >= self.config.max_reconnect_attempts:
            logger.error("voice_ws_reconnect_exhausted", attempts=self._reconnect_attempts)
            self._fail(ReconnectExhausted(self._reconnect_attempts), Trigger.RECONNECT_EXHAUSTED)
            return

        self._reconnect_attempts += 1
        delay_ms = self.reconnect_delay_ms(self._reconnect_attempts)
        logger.info("voice_ws_reconnect_scheduled", attempt=self._reconnect_attempts, delay_ms=delay_ms)
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay_ms / 1000.0),
            name=f"voice_ws_reconnect_{self._reconnect_attempts}",
        )

    async def _reconnect_after(self, delay_s: float) -> None:
        await self._sleep(delay_s)
        if self._closing:
            return
        await self._open(reconnecting=True)

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        await self._cancel_task(task)

    # ── Heartbeat ─────────────────────────────────────────────

    def _start_heartbeat(self) -> None:
        if self.heartbeat_active:
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="voice_ws_heartbeat")

    async def _heartbeat_loop(self) -> None:
        interval = self.config.heartbeat_interval_s
        while True:
            await self._sleep(interval)
            if self._ws is None:
                return
            if self._state in HEARTBEAT_STATES and await self._send(PingMessage()):
                self._pings_sent += 1

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        await self._cancel_task(task)

    # ── Sending ───────────────────────────────────────────────

    async def send_audio(self, encoded_payload: str) -> bool:
        """
        Send one recorded utterance. Only allowed in `ready`.

        Any other state makes this a logged no-op that returns False.
        """
        if self._state is not VoiceState.READY:
            logger.warning("voice_audio_not_sent", state=self._state.value,
                           reason="session not ready")
            return False
        if not await self._send(AudioMessage(data=encoded_payload)):
            return False
        self._transition(Trigger.AUDIO_SENT)
        return True

    async def _send(self, message: ClientMessage) -> bool:
        ws = self._ws
        if ws is None:
            logger.error("voice_ws_not_connected", action=message.action)
            return False
        try:
            await ws.send(serialize_client_message(message))
        except (ConnectionClosed, OSError) as e:
            logger.error("voice_send_failed", action=message.action, error=str(e))
            return False
        logger.debug("voice_message_sent", action=message.action)
        return True

    # ── Receiving ─────────────────────────────────────────────

    def _handle_message(self, raw: Any) -> None:
        try:
            event = parse_server_event(raw)
        except ValueError as e:
            preview = raw[:120] if isinstance(raw, (str, bytes)) else repr(raw)[:120]
            error = ProtocolError(f"Failed to parse message: {e}", raw=str(preview))
            logger.warning("voice_message_dropped", error=error.message, preview=str(preview))
            return

        logger.debug("voice_event_received", tag=event.event)
        self._update_session(event)
        self._transition(event.event)
        self._channel.publish(ServerEventReceived(event))

    def _update_session(self, event: Any) -> None:
        tag = event.event

        if tag == "initialized":
            self._session = VoiceSession(
                thread_id=event.thread_id,
                kb_id=event.kb_id,
                state=self._state,
            )
            return
        if tag == "pong":
            self._last_pong_at = time.monotonic()
            return
        if tag == "error":
            self._last_error = event.message

        session = self._session
        if session is None:
            logger.debug("voice_event_without_session", tag=tag)
            return

        if tag in _STAGE_STARTS:
            session.processing_stage = _STAGE_STARTS[tag]
        elif tag == "stt_complete":
            session.transcribed_text = event.text
        elif tag == "rag_complete":
            session.ai_response = event.text
        elif tag == "tts_complete":
            session.audio_response = event.audio
            session.audio_format = event.format
        elif tag == "done":
            session.duration_ms = event.duration
            session.processing_stage = None
        elif tag == "error":
            session.error = event.message
            session.processing_stage = None

    # ── State ─────────────────────────────────────────────────

    def _transition(self, trigger) -> TransitionResult:
        result = apply_trigger(self._state, trigger)
        if not result.changed:
            return result

        self._state = result.to_state
        if self._session is not None:
            self._session.state = self._state
        logger.info("voice_state_changed",
                    old=result.from_state.value,
                    new=result.to_state.value,
                    trigger=result.trigger)
        self._channel.publish(StateChanged(result.from_state, result.to_state, result.trigger))

        waiters, self._state_event = self._state_event, asyncio.Event()
        waiters.set()
        return result

    def _fail(self, error: VoiceClientError, trigger: Trigger) -> None:
        self._last_error = error.message
        if self._session is not None:
            self._session.error = error.message
        self._transition(trigger)
        self._channel.publish(SessionError(error, state=self._state))

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @staticmethod
    async def _close_quietly(ws: Any) -> None:
        try:
            await ws.close()
        except (WebSocketException, OSError) as e:
            logger.warning("voice_ws_close_failed", error=str(e))


def _close_code(e: ConnectionClosed) -> Optional[int]:
    rcvd = getattr(e, "rcvd", None)
    return rcvd.code if rcvd is not None else None


def _close_reason(e: ConnectionClosed) -> str:
    rcvd = getattr(e, "rcvd", None)
    return rcvd.reason if rcvd is not None else ""
