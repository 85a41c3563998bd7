"""Shared test fixtures for the voice session client.

Nothing here touches the network or audio hardware: the WebSocket, the
sleep used for backoff and heartbeat, and both audio devices are fakes.
"""
import json
import asyncio
import pytest
from typing import Any, Optional, Union

import numpy as np

from config.settings import CaptureConfig, PlaybackConfig, SessionConfig, Settings
from voice.capture import AudioCapture, encode_wav
from voice.playback import AudioPlayer
from voice.transport import SessionTransport

_END = object()


# ══════════════════════════════════════════════════════════════
#  NETWORK
# ══════════════════════════════════════════════════════════════

class FakeWebSocket:
    """In-memory client connection. The test plays the server."""

    def __init__(self):
        self.sent: list[str] = []
        self.closed = False
        self.close_calls = 0
        self._inbound: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise OSError("connection is closed")
        self.sent.append(data)

    async def close(self) -> None:
        self.close_calls += 1
        if not self.closed:
            self.closed = True
            self._inbound.put_nowait(_END)

    # ── server side ──

    def push(self, event: Union[dict, str]) -> None:
        self._inbound.put_nowait(json.dumps(event) if isinstance(event, dict) else event)

    def server_close(self) -> None:
        """Drop the connection from the server side."""
        self.closed = True
        self._inbound.put_nowait(_END)

    def fail(self, error: Exception) -> None:
        """Make the next read raise `error` instead of returning a frame."""
        self._inbound.put_nowait(error)

    def sent_messages(self) -> list[dict]:
        return [json.loads(s) for s in self.sent]

    def sent_actions(self) -> list[str]:
        return [m["action"] for m in self.sent_messages()]

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        item = await self._inbound.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    """Stands in for `websocket_connector`. Hands out FakeWebSockets."""

    def __init__(self):
        self.connections: list[FakeWebSocket] = []
        self.calls: list[dict] = []
        self.fail_next = 0
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self, url: str, *, open_timeout: float, max_size: int) -> FakeWebSocket:
        self.calls.append({"url": url, "open_timeout": open_timeout, "max_size": max_size})
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_next > 0:
            self.fail_next -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket()
        self.connections.append(ws)
        return ws

    @property
    def last(self) -> FakeWebSocket:
        return self.connections[-1]


class ManualSleeper:
    """Replacement for asyncio.sleep. Records delays, resumes only when released."""

    def __init__(self):
        self.delays: list[float] = []
        self._pending: list[tuple[float, asyncio.Future]] = []

    async def __call__(self, delay: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        entry = (delay, fut)
        self.delays.append(delay)
        self._pending.append(entry)
        try:
            await fut
        finally:
            if entry in self._pending:
                self._pending.remove(entry)

    def pending(self) -> list[float]:
        return [d for d, fut in self._pending if not fut.done()]

    def release(self, delay: Optional[float] = None) -> bool:
        for d, fut in self._pending:
            if not fut.done() and (delay is None or d == delay):
                fut.set_result(None)
                return True
        return False

    async def wait_for(self, delay: float, timeout: float = 1.0) -> None:
        async def _poll():
            while delay not in self.pending():
                await asyncio.sleep(0)
        await asyncio.wait_for(_poll(), timeout)


async def settle(rounds: int = 20) -> None:
    """Let every ready task run until the loop is quiet.

    Every fifth round is a short real sleep so executor jobs can land.
    """
    for i in range(rounds):
        await asyncio.sleep(0.01 if i % 5 == 4 else 0)


# ══════════════════════════════════════════════════════════════
#  AUDIO DEVICES
# ══════════════════════════════════════════════════════════════

class FakeInputStream:
    def __init__(self, config: CaptureConfig, callback):
        self.config = config
        self.callback = callback
        self.stopped = False
        self.closed = False

    def feed(self, samples: np.ndarray) -> None:
        block = np.asarray(samples, dtype=np.int16).reshape(-1, self.config.channels)
        self.callback(block, len(block), None, None)

    def stop(self):
        self.stopped = True

    def close(self):
        self.closed = True


class FakeInputFactory:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.streams: list[FakeInputStream] = []

    def __call__(self, config: CaptureConfig, callback) -> FakeInputStream:
        if self.error is not None:
            raise self.error
        stream = FakeInputStream(config, callback)
        self.streams.append(stream)
        return stream

    @property
    def last(self) -> FakeInputStream:
        return self.streams[-1]


class FakeOutputStream:
    def __init__(self, config: PlaybackConfig, sample_rate: int, channels: int, read, on_finished):
        self.config = config
        self.sample_rate = sample_rate
        self.channels = channels
        self.read = read
        self.on_finished = on_finished
        self.stop_calls = 0
        self.close_calls = 0

    def pump(self, frames: int = 1024) -> np.ndarray:
        """One device callback. Finishes the clip when it runs short."""
        chunk = self.read(frames)
        if len(chunk) < frames:
            self.on_finished()
        return chunk

    def play_to_end(self) -> int:
        total = 0
        while True:
            n = len(self.pump())
            total += n
            if n < 1024:
                return total

    def stop(self):
        self.stop_calls += 1

    def close(self):
        self.close_calls += 1


class FakeOutputFactory:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.streams: list[FakeOutputStream] = []

    def __call__(self, config, sample_rate, channels, read, on_finished) -> FakeOutputStream:
        if self.error is not None:
            raise self.error
        stream = FakeOutputStream(config, sample_rate, channels, read, on_finished)
        self.streams.append(stream)
        return stream

    @property
    def last(self) -> FakeOutputStream:
        return self.streams[-1]


def make_wav(seconds: float = 0.1, sample_rate: int = 16000, channels: int = 1) -> bytes:
    n = int(seconds * sample_rate)
    t = np.arange(n) / sample_rate
    tone = (np.sin(2 * np.pi * 440 * t) * 8000).astype(np.int16)
    frames = np.repeat(tone.reshape(-1, 1), channels, axis=1)
    return encode_wav(frames, sample_rate, channels)


# ══════════════════════════════════════════════════════════════
#  FIXTURES
# ══════════════════════════════════════════════════════════════

@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(url="ws://test.local/ws/voice", thread_id="thread-1")


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def sleeper() -> ManualSleeper:
    return ManualSleeper()


@pytest.fixture
def transport(session_config, connector, sleeper) -> SessionTransport:
    return SessionTransport(session_config, connector=connector, sleep=sleeper)


@pytest.fixture
def input_factory() -> FakeInputFactory:
    return FakeInputFactory()


@pytest.fixture
def output_factory() -> FakeOutputFactory:
    return FakeOutputFactory()


@pytest.fixture
def capture(input_factory) -> AudioCapture:
    return AudioCapture(CaptureConfig(), stream_factory=input_factory)


@pytest.fixture
def player(output_factory) -> AudioPlayer:
    return AudioPlayer(PlaybackConfig(), stream_factory=output_factory)


@pytest.fixture
def settings(session_config) -> Settings:
    return Settings(session=session_config)
