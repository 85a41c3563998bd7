#!/usr/bin/env python3
"""
Voice Chat — push-to-talk terminal client for the voice session server.

Press Enter to start talking, Enter again to send. Type `q` to quit.

Usage:
    python scripts/voice_chat.py
    python scripts/voice_chat.py --url ws://localhost:8000/ws/voice --thread my-thread
    python scripts/voice_chat.py --config config/settings.yaml --log-level debug
"""
import asyncio
import logging
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog
from dotenv import load_dotenv


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
    )


def _show_token(token: str) -> None:
    print(token, end="", flush=True)


def _show_response(text: str) -> None:
    print(f"\n🧠 {text}")


async def run_chat(args: argparse.Namespace) -> int:
    from config.settings import load_settings
    from voice.controller import VoiceSessionController
    from voice.errors import VoiceClientError

    settings = load_settings(args.config)
    if args.url:
        settings.session.url = args.url
    if args.thread:
        settings.session.thread_id = args.thread
    if args.input_device:
        settings.capture.device = args.input_device
    if args.output_device:
        settings.playback.device = args.output_device
    configure_logging(args.log_level or settings.log_level)

    loop = asyncio.get_running_loop()

    async def prompt(text: str) -> str:
        return (await loop.run_in_executor(None, input, text)).strip().lower()

    async with VoiceSessionController(
        settings,
        auto_connect=False,
        on_transcription=lambda text: print(f"🎧 {text}"),
        on_response_token=_show_token if args.stream else None,
        on_response=_show_response,
        on_error=lambda message: print(f"❌ {message}"),
    ) as voice:
        try:
            await voice.connect()
            session = await voice.wait_ready(timeout=settings.session.open_timeout_s)
        except (VoiceClientError, asyncio.TimeoutError) as e:
            print(f"Could not start a session with {settings.session.url}: {e}")
            return 1
        print(f"Connected. thread={session.thread_id} kb={session.kb_id or '-'}")

        while True:
            if await prompt("[Enter] talk, [q] quit > ") == "q":
                break
            try:
                await voice.start_recording()
            except VoiceClientError:
                continue
            await prompt("Recording… [Enter] send > ")
            try:
                await voice.stop_recording()
            except VoiceClientError:
                continue

        if args.verbose:
            print(voice.latency.to_dict())
    return 0


def main():
    load_dotenv()

    parser = argparse.ArgumentParser(description="Push-to-talk voice chat")
    parser.add_argument("--config", default=None, help="Settings YAML (default: $VOICE_CLIENT_CONFIG)")
    parser.add_argument("--url", default=None, help="Voice WebSocket URL")
    parser.add_argument("--thread", default=None, help="Conversation thread id")
    parser.add_argument("--input-device", default=None, help="Input device index or name")
    parser.add_argument("--output-device", default=None, help="Output device index or name")
    parser.add_argument("--log-level", default=None, help="debug, info, warning, error")
    parser.add_argument("--stream", action="store_true", help="Print response tokens as they arrive")
    parser.add_argument("--verbose", action="store_true", help="Print a latency report on exit")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run_chat(args)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
