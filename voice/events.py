"""
Session Event Channel — one ordered stream of tagged session events.

The transport publishes three kinds of items, in the order they happen:

- StateChanged: the session moved from one VoiceState to another
- ServerEventReceived: a parsed inbound server event, verbatim
- SessionError: a connection-level failure (open failed, reconnect exhausted)

Each subscriber gets its own queue, so a slow consumer never reorders or
drops items for another.

Usage:
    async with transport.events() as stream:
        async for item in stream:
            if isinstance(item, ServerEventReceived): ...
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from typing import Any, AsyncIterator, Union

from models.schemas import VoiceState
from voice.errors import VoiceClientError

logger = structlog.get_logger()


@dataclass(frozen=True)
class StateChanged:
    old: VoiceState
    new: VoiceState
    trigger: str = ""


@dataclass(frozen=True)
class ServerEventReceived:
    event: Any                                # a models.schemas server event model

    @property
    def tag(self) -> str:
        return self.event.event


@dataclass(frozen=True)
class SessionError:
    error: VoiceClientError
    state: VoiceState = VoiceState.ERROR

    @property
    def message(self) -> str:
        return self.error.message

    @property
    def fatal(self) -> bool:
        return self.error.fatal


SessionEvent = Union[StateChanged, ServerEventReceived, SessionError]

_CLOSED = object()


class Subscription:
    """A single consumer's view of the channel."""

    def __init__(self, channel: "EventChannel"):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def _put(self, item: Any) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> SessionEvent:
        """Next item; raises StopAsyncIteration once the channel is closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            self._closed = True
            raise StopAsyncIteration
        return item

    def get_nowait(self) -> SessionEvent:
        item = self._queue.get_nowait()
        if item is _CLOSED:
            self._closed = True
            raise StopAsyncIteration
        return item

    def drain(self) -> list[SessionEvent]:
        """Return everything already queued without waiting."""
        items = []
        while not self._queue.empty():
            try:
                items.append(self.get_nowait())
            except StopAsyncIteration:
                break
        return items

    def close(self) -> None:
        self._channel._unsubscribe(self)
        if not self._closed:
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[SessionEvent]:
        return self

    async def __anext__(self) -> SessionEvent:
        return await self.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


class EventChannel:
    """Fan-out of session events to every current subscriber, in order."""

    def __init__(self):
        self._subscribers: list[Subscription] = []
        self._published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def published_count(self) -> int:
        return self._published

    def subscribe(self) -> Subscription:
        sub = Subscription(self)
        self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def publish(self, item: SessionEvent) -> None:
        self._published += 1
        for sub in list(self._subscribers):
            sub._put(item)

    def close(self) -> None:
        """End every subscription; later subscribers still work."""
        for sub in list(self._subscribers):
            sub.close()
        logger.debug("voice_event_channel_closed", published=self._published)
