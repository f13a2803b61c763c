"""Per-episode publish/subscribe channel for generation lifecycle events.

Each episode id gets one channel, created lazily by ``emit`` or ``subscribe``.
Delivery is broadcast: every subscriber receives every event emitted after it
subscribed, in emission order. There is no backlog; events emitted while a
channel has no subscribers are dropped.

Channels are evicted by ``sweep`` once they have no subscribers and have been
idle for longer than the configured TTL.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from models.events import EpisodeEvent

logger = logging.getLogger(__name__)

# Queued by close() so a consumer blocked in get() wakes up and stops
_CLOSED = object()


@dataclass
class _Channel:
    subscribers: list["Subscription"] = field(default_factory=list)
    last_activity: float = 0.0


class Subscription:
    """A live, ordered stream of events for one episode.

    Usable as an async iterator and as an async context manager; leaving the
    context (or calling ``close``) detaches it from the channel.

    Example:
        async with bus.subscribe(episode_id) as events:
            async for event in events:
                ...
    """

    def __init__(self, bus: "EventBus", episode_id: str):
        self.episode_id = episode_id
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def _deliver(self, event: EpisodeEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def get(self) -> EpisodeEvent:
        """Wait for the next event.

        Events delivered before ``close`` are still returned, in order.

        Raises:
            StopAsyncIteration: Once the subscription is closed and drained
        """
        event = await self._queue.get()
        if event is _CLOSED:
            # Leave the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return event

    def drain(self) -> list[EpisodeEvent]:
        """Take every event already delivered, without waiting."""
        events = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            events.append(event)
        return events

    def close(self) -> None:
        """Detach from the channel and wake any consumer waiting in ``get``."""
        if not self.closed:
            self.closed = True
            self._bus._detach(self)
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[EpisodeEvent]:
        return self

    async def __anext__(self) -> EpisodeEvent:
        return await self.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventBus:
    """Observer list keyed by episode id."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._channels: dict[str, _Channel] = {}
        self._clock = clock

    def _channel(self, episode_id: str) -> _Channel:
        channel = self._channels.get(episode_id)
        if channel is None:
            channel = _Channel(last_activity=self._clock())
            self._channels[episode_id] = channel
        return channel

    def emit(self, episode_id: str, event: EpisodeEvent) -> None:
        """Deliver ``event`` to all current subscribers of ``episode_id``.

        Fire-and-forget: with no subscribers the event is dropped.
        """
        channel = self._channel(episode_id)
        channel.last_activity = self._clock()
        for subscription in list(channel.subscribers):
            subscription._deliver(event)

    def subscribe(self, episode_id: str) -> Subscription:
        """Register a new subscriber. Only events emitted after this call are seen."""
        channel = self._channel(episode_id)
        channel.last_activity = self._clock()
        subscription = Subscription(self, episode_id)
        channel.subscribers.append(subscription)
        logger.debug(
            f"Subscriber attached to {episode_id} ({len(channel.subscribers)} active)"
        )
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        channel = self._channels.get(subscription.episode_id)
        if channel is None:
            return
        if subscription in channel.subscribers:
            channel.subscribers.remove(subscription)
        channel.last_activity = self._clock()

    def subscriber_count(self, episode_id: str) -> int:
        channel = self._channels.get(episode_id)
        return len(channel.subscribers) if channel else 0

    def has_channel(self, episode_id: str) -> bool:
        return episode_id in self._channels

    def sweep(self, max_idle_seconds: float) -> int:
        """Evict channels with no subscribers idle for longer than ``max_idle_seconds``.

        Returns:
            Number of channels removed
        """
        now = self._clock()
        stale = [
            episode_id
            for episode_id, channel in self._channels.items()
            if not channel.subscribers and now - channel.last_activity > max_idle_seconds
        ]
        for episode_id in stale:
            del self._channels[episode_id]
        if stale:
            logger.info(f"Evicted {len(stale)} idle event channel(s)")
        return len(stale)

    async def run_sweeper(self, max_idle_seconds: float, interval_seconds: float) -> None:
        """Sweep periodically until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep(max_idle_seconds)
