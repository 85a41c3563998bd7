"""
Configuration loader for the voice session client.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class SessionConfig:
    url: str = "ws://localhost:8000/ws/voice"
    thread_id: str = ""
    audio_format: str = "wav"
    auto_reconnect: bool = True
    max_reconnect_attempts: int = 3
    reconnect_base_delay_ms: int = 1000     # delay = base * 2^attempt
    reconnect_max_delay_ms: int = 10000
    heartbeat_interval_s: float = 30.0
    open_timeout_s: float = 10.0
    max_message_bytes: int = 16 * 1024 * 1024   # TTS payloads are whole files


@dataclass
class CaptureConfig:
    sample_rate: int = 16000
    channels: int = 1
    dtype: str = "int16"
    blocksize: int = 1024
    device: Optional[str] = None            # index or name substring; None = default input


@dataclass
class PlaybackConfig:
    device: Optional[str] = None
    blocksize: int = 1024


@dataclass
class LatencyConfig:
    stt_ms: int = 1500
    rag_ms: int = 3000
    tts_ms: int = 2000
    total_ms: int = 6000


@dataclass
class Settings:
    app_name: str = "VoiceSessionClient"
    debug: bool = False
    log_level: str = "info"
    auto_connect: bool = False
    session: SessionConfig = field(default_factory=SessionConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    latency: LatencyConfig = field(default_factory=LatencyConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "VOICE_CLIENT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_level = raw.get("log_level", settings.log_level)
        settings.auto_connect = raw.get("auto_connect", settings.auto_connect)

        if "session" in raw:
            s = raw["session"]
            defaults = SessionConfig()
            settings.session = SessionConfig(
                url=s.get("url", defaults.url),
                thread_id=str(s.get("thread_id", defaults.thread_id)),
                audio_format=s.get("audio_format", defaults.audio_format),
                auto_reconnect=s.get("auto_reconnect", defaults.auto_reconnect),
                max_reconnect_attempts=int(s.get("max_reconnect_attempts", defaults.max_reconnect_attempts)),
                reconnect_base_delay_ms=int(s.get("reconnect_base_delay_ms", defaults.reconnect_base_delay_ms)),
                reconnect_max_delay_ms=int(s.get("reconnect_max_delay_ms", defaults.reconnect_max_delay_ms)),
                heartbeat_interval_s=float(s.get("heartbeat_interval_s", defaults.heartbeat_interval_s)),
                open_timeout_s=float(s.get("open_timeout_s", defaults.open_timeout_s)),
                max_message_bytes=int(s.get("max_message_bytes", defaults.max_message_bytes)),
            )

        if "capture" in raw:
            c = raw["capture"]
            defaults = CaptureConfig()
            settings.capture = CaptureConfig(
                sample_rate=int(c.get("sample_rate", defaults.sample_rate)),
                channels=int(c.get("channels", defaults.channels)),
                dtype=c.get("dtype", defaults.dtype),
                blocksize=int(c.get("blocksize", defaults.blocksize)),
                device=_optional_str(c.get("device")),
            )

        if "playback" in raw:
            p = raw["playback"]
            settings.playback = PlaybackConfig(
                device=_optional_str(p.get("device")),
                blocksize=int(p.get("blocksize", PlaybackConfig.blocksize)),
            )

        if "latency" in raw:
            lat = raw["latency"]
            defaults = LatencyConfig()
            settings.latency = LatencyConfig(
                stt_ms=int(lat.get("stt_ms", defaults.stt_ms)),
                rag_ms=int(lat.get("rag_ms", defaults.rag_ms)),
                tts_ms=int(lat.get("tts_ms", defaults.tts_ms)),
                total_ms=int(lat.get("total_ms", defaults.total_ms)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
