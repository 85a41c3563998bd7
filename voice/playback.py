"""
Audio Playback — one explicitly owned output handle per response clip.

`AudioPlayer.play()` always stops and releases the previous clip before
opening the next one, so at most one response plays at a time and an
interrupted clip never holds the output device.
"""
from __future__ import annotations

import asyncio
import itertools
import threading
import structlog
from typing import Any, Callable, Optional

import numpy as np

from config.settings import PlaybackConfig
from models.schemas import EncodedAudio
from voice.capture import WAV_MIME_TYPE, decode_wav, device_arg
from voice.errors import PlaybackError

logger = structlog.get_logger()

ReadFrames = Callable[[int], np.ndarray]
OutputStreamFactory = Callable[[PlaybackConfig, int, int, ReadFrames, Callable[[], None]], Any]

_WAV_TYPES = {WAV_MIME_TYPE, "audio/x-wav", "audio/wave"}


def open_output_stream(
    config: PlaybackConfig,
    sample_rate: int,
    channels: int,
    read: ReadFrames,
    on_finished: Callable[[], None],
) -> Any:
    """Open and start a `sounddevice.OutputStream` fed by `read`."""
    try:
        # PortAudio is loaded at import time
        import sounddevice as sd
    except OSError as e:
        raise PlaybackError(f"audio backend unavailable: {e}") from e

    def callback(outdata, frames, time_info, status):
        if status:
            logger.warning("voice_playback_status", status=str(status))
        chunk = read(frames)
        n = len(chunk)
        outdata[:n] = chunk
        if n < frames:
            outdata[n:] = 0
            raise sd.CallbackStop

    try:
        stream = sd.OutputStream(
            samplerate=sample_rate,
            channels=channels,
            dtype="int16",
            blocksize=config.blocksize,
            device=device_arg(config.device),
            callback=callback,
            finished_callback=on_finished,
        )
        stream.start()
    except (sd.PortAudioError, ValueError) as e:
        raise PlaybackError(f"Failed to open audio output: {e}") from e
    return stream


def _release_stream(stream: Any, clip_id: int) -> bool:
    try:
        stream.stop()
        stream.close()
    except Exception as e:
        # the device error is only reported
        logger.warning("voice_playback_release_failed", clip_id=clip_id, error=str(e))
        return False
    return True


class PlaybackHandle:
    """A single clip on the output device. Released exactly once.

    When the clip plays out, the handle releases its own stream on a worker
    thread, so a finished clip never keeps the device open until the next
    `play()` or `stop()`.
    """

    def __init__(self, clip_id: int, samples: np.ndarray, sample_rate: int):
        self.clip_id = clip_id
        self.sample_rate = sample_rate
        self._samples = samples
        self._pos = 0
        self._lock = threading.Lock()
        self._release_lock = threading.Lock()
        self._finished = threading.Event()
        self._stream: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._released = False
        self.interrupted = False

    @property
    def duration_s(self) -> float:
        return len(self._samples) / float(self.sample_rate) if self.sample_rate else 0.0

    @property
    def channels(self) -> int:
        return self._samples.shape[1] if self._samples.ndim > 1 else 1

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    @property
    def released(self) -> bool:
        return self._released

    def read(self, frames: int) -> np.ndarray:
        """Next `frames` samples; shorter (or empty) at the end of the clip."""
        with self._lock:
            chunk = self._samples[self._pos:self._pos + frames]
            self._pos += len(chunk)
            return chunk

    def _attach(self, stream: Any, loop: asyncio.AbstractEventLoop) -> bool:
        """Take ownership of `stream`. False if the handle was already stopped."""
        with self._release_lock:
            if self._released:
                return False
            self._stream = stream
            self._loop = loop
        if self._finished.is_set():
            self._schedule_release()
        return True

    def _mark_finished(self) -> None:
        # runs on the audio thread; the stream can't be stopped from here
        self._finished.set()
        self._schedule_release()

    def _schedule_release(self) -> None:
        loop = self._loop
        if loop is None or self._released:
            return
        try:
            loop.call_soon_threadsafe(self._release_in_background)
        except RuntimeError:
            logger.debug("voice_playback_loop_closed", clip_id=self.clip_id)

    def _release_in_background(self) -> None:
        if not self._released:
            asyncio.get_running_loop().run_in_executor(None, self.stop)

    def stop(self) -> None:
        """Halt the clip (if still playing) and release the output stream."""
        with self._release_lock:
            if self._released:
                return
            self._released = True
            if not self._finished.is_set():
                self.interrupted = True
            self._finished.set()
            stream, self._stream = self._stream, None
        if stream is not None and _release_stream(stream, self.clip_id):
            logger.debug("voice_playback_released", clip_id=self.clip_id, interrupted=self.interrupted)

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the clip to end, then release it. False on timeout."""
        loop = asyncio.get_running_loop()
        done = await loop.run_in_executor(None, self._finished.wait, timeout)
        if done:
            await loop.run_in_executor(None, self.stop)
        return done


class AudioPlayer:
    """Owns the output device for response playback, one clip at a time.

    Opening and releasing streams blocks on the audio backend, so both run
    in the default executor.
    """

    def __init__(
        self,
        config: PlaybackConfig = None,
        stream_factory: Optional[OutputStreamFactory] = None,
    ):
        self.config = config or PlaybackConfig()
        self._stream_factory = stream_factory or open_output_stream
        self._current: Optional[PlaybackHandle] = None
        self._ids = itertools.count(1)

    @property
    def current(self) -> Optional[PlaybackHandle]:
        return self._current

    @property
    def is_playing(self) -> bool:
        return self._current is not None and not self._current.finished

    async def play(self, audio: EncodedAudio) -> PlaybackHandle:
        """Stop any current clip, then start `audio`. Raises PlaybackError."""
        await self.stop()

        if audio.mime_type not in _WAV_TYPES:
            raise PlaybackError(f"Unsupported audio type: {audio.mime_type}")
        samples, sample_rate = decode_wav(audio.data)

        handle = PlaybackHandle(next(self._ids), samples, sample_rate)
        # visible before the stream opens so a concurrent stop() can claim it
        self._current = handle
        loop = asyncio.get_running_loop()
        try:
            stream = await loop.run_in_executor(
                None, self._stream_factory,
                self.config, sample_rate, handle.channels, handle.read, handle._mark_finished,
            )
        except Exception:
            if self._current is handle:
                self._current = None
            raise

        if not handle._attach(stream, loop):
            logger.info("voice_playback_superseded", clip_id=handle.clip_id)
            await loop.run_in_executor(None, _release_stream, stream, handle.clip_id)
            return handle

        logger.info("voice_playback_started",
                    clip_id=handle.clip_id,
                    seconds=round(handle.duration_s, 2),
                    sample_rate=sample_rate)
        return handle

    async def stop(self) -> None:
        handle, self._current = self._current, None
        if handle is not None:
            await asyncio.get_running_loop().run_in_executor(None, handle.stop)
