"""
Audio Capture — microphone recording into single-file WAV audio.

The input device is opened through a stream factory. The default factory
uses `sounddevice`; blocks arrive on the PortAudio thread and are queued
until `stop_recording()` finalizes them into one WAV file.

Also provides the transport encoding used on the wire (base64 text) and
the WAV framing helpers shared with playback.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import io
import queue
import wave
import structlog
from typing import Any, Callable, Optional

import numpy as np

from config.settings import CaptureConfig
from models.schemas import EncodedAudio
from voice.errors import AlreadyRecording, AudioDecodeError, CaptureError, NotRecording, PermissionDenied

logger = structlog.get_logger()

BlockCallback = Callable[[np.ndarray, int, Any, Any], None]
InputStreamFactory = Callable[[CaptureConfig, BlockCallback], Any]

WAV_MIME_TYPE = "audio/wav"


def device_arg(spec: Optional[str]) -> Any:
    """`sounddevice` takes an index or a name substring; None means default."""
    if spec is None:
        return None
    return int(spec) if str(spec).isdigit() else spec


def open_input_stream(config: CaptureConfig, callback: BlockCallback) -> Any:
    """Open and start a `sounddevice.InputStream`. Raises PermissionDenied on failure."""
    try:
        # PortAudio is loaded at import time
        import sounddevice as sd
    except OSError as e:
        raise PermissionDenied(f"audio backend unavailable: {e}") from e

    try:
        stream = sd.InputStream(
            samplerate=config.sample_rate,
            channels=config.channels,
            dtype=config.dtype,
            blocksize=config.blocksize,
            device=device_arg(config.device),
            callback=callback,
        )
        stream.start()
    except (sd.PortAudioError, ValueError) as e:
        raise PermissionDenied(str(e)) from e
    return stream


# ══════════════════════════════════════════════════════════════
#  WAV FRAMING
# ══════════════════════════════════════════════════════════════

def _to_int16(frames: np.ndarray) -> np.ndarray:
    if frames.dtype == np.int16:
        return frames
    if np.issubdtype(frames.dtype, np.floating):
        pcm = np.clip(frames, -1.0, 1.0)
        return (pcm * 32767.0).astype(np.int16)
    if frames.dtype == np.int32:
        return (frames >> 16).astype(np.int16)
    return frames.astype(np.int16)


def encode_wav(frames: np.ndarray, sample_rate: int, channels: int) -> bytes:
    """Frame PCM samples (shape (n,) or (n, channels)) as a 16-bit WAV file."""
    pcm = _to_int16(np.asarray(frames))
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm.tobytes())
    return buf.getvalue()


def decode_wav(data: bytes) -> tuple[np.ndarray, int]:
    """Read a 16-bit PCM WAV file into (samples shaped (n, channels), sample_rate)."""
    try:
        with wave.open(io.BytesIO(data), "rb") as wf:
            channels = wf.getnchannels()
            sample_width = wf.getsampwidth()
            sample_rate = wf.getframerate()
            raw = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise AudioDecodeError(f"Invalid WAV data: {e}") from e

    if sample_width != 2:
        raise AudioDecodeError(f"Unsupported WAV sample width: {sample_width * 8} bits")
    try:
        samples = np.frombuffer(raw, dtype=np.int16).reshape(-1, channels)
    except ValueError as e:
        # header promises more (or differently shaped) data than the payload holds
        raise AudioDecodeError(f"Truncated WAV data: {e}") from e
    return samples, sample_rate


# ══════════════════════════════════════════════════════════════
#  TRANSPORT ENCODING
# ══════════════════════════════════════════════════════════════

def encode_for_transport(audio: EncodedAudio) -> str:
    """Base64 text safe to embed in a JSON message."""
    return base64.b64encode(audio.data).decode("ascii")


def decode_from_transport(payload: str, mime_type: str = WAV_MIME_TYPE) -> EncodedAudio:
    """Inverse of `encode_for_transport`. Accepts a `data:` URL prefix."""
    text = payload.strip()
    if text.startswith("data:") and "," in text:
        text = text.split(",", 1)[1]
    try:
        data = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AudioDecodeError(f"Invalid base64 audio payload: {e}") from e
    return EncodedAudio(data=data, mime_type=mime_type)


# ══════════════════════════════════════════════════════════════
#  AUDIO CAPTURE
# ══════════════════════════════════════════════════════════════

class AudioCapture:
    """
    Records one utterance at a time from the microphone.

    Usage:
        capture = AudioCapture(CaptureConfig())
        await capture.start_recording()
        ...
        audio = await capture.stop_recording()     # EncodedAudio (WAV)
        payload = capture.encode_for_transport(audio)
    """

    encode_for_transport = staticmethod(encode_for_transport)
    decode_from_transport = staticmethod(decode_from_transport)

    def __init__(
        self,
        config: CaptureConfig = None,
        stream_factory: Optional[InputStreamFactory] = None,
    ):
        self.config = config or CaptureConfig()
        self._stream_factory = stream_factory or open_input_stream
        self._stream: Any = None
        self._active = False
        self._blocks: "queue.Queue[np.ndarray]" = queue.Queue()
        self._status: list[str] = []

    @property
    def is_recording(self) -> bool:
        return self._active

    async def start_recording(self) -> None:
        """Open the microphone and start buffering. Holds the device until stopped."""
        if self._active:
            raise AlreadyRecording()
        self._active = True
        self._blocks = queue.Queue()
        self._status = []

        loop = asyncio.get_running_loop()
        try:
            self._stream = await loop.run_in_executor(
                None, self._stream_factory, self.config, self._on_block,
            )
        except CaptureError as e:
            self._active = False
            logger.error("voice_recording_failed", error=e.message)
            raise
        except OSError as e:
            self._active = False
            logger.error("voice_recording_failed", error=str(e))
            raise CaptureError(f"Microphone device failure: {e}") from e

        logger.info("voice_recording_started",
                    sample_rate=self.config.sample_rate,
                    channels=self.config.channels,
                    device=self.config.device)

    async def stop_recording(self) -> EncodedAudio:
        """Release the microphone and return everything recorded as one WAV file."""
        if not self._active or self._stream is None:
            raise NotRecording()
        stream, self._stream = self._stream, None
        self._active = False

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._release, stream)
        except Exception as e:
            # buffered audio is still usable
            logger.warning("voice_recording_release_failed", error=str(e))

        frames = self._drain()
        data = encode_wav(frames, self.config.sample_rate, self.config.channels)
        logger.info("voice_recording_stopped",
                    bytes=len(data),
                    seconds=round(len(frames) / float(self.config.sample_rate), 2),
                    device_status=self._status or None)
        return EncodedAudio(data=data, mime_type=WAV_MIME_TYPE)

    def _on_block(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            self._status.append(str(status))
        # indata is reused by PortAudio after the callback returns
        self._blocks.put(indata.copy())

    def _drain(self) -> np.ndarray:
        blocks = []
        while True:
            try:
                blocks.append(self._blocks.get_nowait())
            except queue.Empty:
                break
        if not blocks:
            return np.empty((0, self.config.channels), dtype=np.int16)
        return np.concatenate(blocks, axis=0)

    @staticmethod
    def _release(stream: Any) -> None:
        try:
            stream.stop()
        finally:
            stream.close()
