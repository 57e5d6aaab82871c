"""Channel publishing contract and the in-process broker."""

import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Protocol, Set

import structlog

logger = structlog.get_logger()


class PublishError(Exception):
    """An event could not be delivered to the channel service."""


class ChannelPublisher(Protocol):
    """Real-time channel service: ``publish(channel, event, payload)``."""

    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        ...


@dataclass(frozen=True)
class ChannelEvent:
    channel: str
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)


class Subscription:
    """Scoped subscription to one channel.

    Use as an async context manager; the queue is always detached from the
    broker on exit, including when the body raises.
    """

    def __init__(self, broker: "InMemoryBroker", channel: str) -> None:
        self.broker = broker
        self.channel = channel
        self._queue: "asyncio.Queue[Optional[ChannelEvent]]" = asyncio.Queue()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> "Subscription":
        if not self._open:
            self.broker._attach(self.channel, self._queue)
            self._open = True
            logger.debug("channel_subscribed", channel=self.channel)
        return self

    async def close(self) -> None:
        if self._open:
            self.broker._detach(self.channel, self._queue)
            self._open = False
            logger.debug("channel_unsubscribed", channel=self.channel)

    async def __aenter__(self) -> "Subscription":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def get(self, timeout: Optional[float] = None) -> ChannelEvent:
        """Next event. Raises ``ConnectionError`` if the broker shut down."""
        if timeout is None:
            event = await self._queue.get()
        else:
            event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if event is None:
            self._open = False
            raise ConnectionError(f"channel {self.channel} closed")
        return event

    def drain(self) -> List[ChannelEvent]:
        """Events already delivered, without waiting."""
        events = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not None:
                events.append(event)
        return events

    async def __aiter__(self) -> AsyncIterator[ChannelEvent]:
        while True:
            try:
                yield await self.get()
            except ConnectionError:
                return


class InMemoryBroker:
    """Single-process channel service used in development and tests."""

    def __init__(self, history_size: int = 1000) -> None:
        self._subscribers: Dict[str, Set["asyncio.Queue[Optional[ChannelEvent]]"]] = defaultdict(set)
        self.history: Deque[ChannelEvent] = deque(maxlen=history_size)
        self.closed = False

    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        if self.closed:
            raise PublishError("broker is closed")
        message = ChannelEvent(channel=channel, name=event, payload=payload)
        self.history.append(message)
        for queue in list(self._subscribers.get(channel, ())):
            queue.put_nowait(message)

    def subscribe(self, channel: str) -> Subscription:
        return Subscription(self, channel)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    def events(self, channel: Optional[str] = None, name: Optional[str] = None) -> List[ChannelEvent]:
        """Published events, optionally filtered."""
        return [
            e
            for e in self.history
            if (channel is None or e.channel == channel) and (name is None or e.name == name)
        ]

    def close(self) -> None:
        """Disconnect every subscriber."""
        self.closed = True
        for queues in self._subscribers.values():
            for queue in queues:
                queue.put_nowait(None)
        self._subscribers.clear()

    def reopen(self) -> None:
        self.closed = False

    def _attach(self, channel: str, queue: "asyncio.Queue[Optional[ChannelEvent]]") -> None:
        if self.closed:
            raise ConnectionError("broker is closed")
        self._subscribers[channel].add(queue)

    def _detach(self, channel: str, queue: "asyncio.Queue[Optional[ChannelEvent]]") -> None:
        queues = self._subscribers.get(channel)
        if queues is not None:
            queues.discard(queue)
            if not queues:
                del self._subscribers[channel]
