"""Per-run notification channels with fire-and-forget delivery."""

import asyncio
import logging
from typing import Dict, Optional, Set

from testbed.config import settings
from testbed.models.run import Run
from testbed.schemas.events import RunEvent

logger = logging.getLogger(__name__)


class Subscription:
    """Async iterator over events delivered to one subscriber."""

    def __init__(self, hub: "EventHub", run_id: Optional[str], maxsize: int):
        self.run_id = run_id
        self._hub = hub
        self._queue: "asyncio.Queue[Optional[RunEvent]]" = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, event: RunEvent) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Subscriber queue full, dropping {event.event} for run {event.run_id}")

    def end(self) -> None:
        """Signal end of stream; the iterator stops after draining queued events."""
        if self.closed:
            return
        self.closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def close(self) -> None:
        """Detach from the hub."""
        self._hub.unsubscribe(self)
        self.end()

    def __aiter__(self):
        return self

    async def __anext__(self) -> RunEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class RunChannel:
    """Publishing side of one run's notifications, owned by its orchestrator task."""

    def __init__(self, hub: "EventHub", run_id: str):
        self.run_id = run_id
        self._hub = hub
        self.subscribers: Set[Subscription] = set()
        self.closed = False

    def publish(self, event: str, run: Run, **data) -> RunEvent:
        """
        Emit an event to this run's subscribers and to hub-wide subscribers.

        Args:
            event: Event name (see testbed.schemas.events)
            run: Current record, snapshotted into the event
            **data: Event payload

        Returns:
            The emitted event
        """
        message = RunEvent(
            event=event,
            run_id=self.run_id,
            run=run.model_dump(mode="json"),
            data=data,
        )
        if self.closed:
            logger.warning(f"Dropping {event} for run {self.run_id}: channel closed")
            return message

        for subscriber in list(self.subscribers) + list(self._hub.global_subscribers):
            subscriber.deliver(message)
        return message

    def close(self) -> None:
        """End the stream for per-run subscribers."""
        if self.closed:
            return
        self.closed = True
        for subscriber in list(self.subscribers):
            subscriber.end()
        self.subscribers.clear()
        self._hub.channels.pop(self.run_id, None)


class EventHub:
    """Registry of open run channels and their subscribers."""

    def __init__(self, queue_size: Optional[int] = None):
        """Initialize the hub."""
        self.queue_size = queue_size or settings.EVENT_QUEUE_SIZE
        self.channels: Dict[str, RunChannel] = {}
        self.global_subscribers: Set[Subscription] = set()

    def open_channel(self, run_id: str) -> RunChannel:
        channel = RunChannel(self, run_id)
        self.channels[run_id] = channel
        return channel

    def subscribe(self, run_id: Optional[str] = None) -> Subscription:
        """
        Subscribe to one run's events, or to all runs when run_id is None.

        A subscription to a run without an open channel ends immediately.
        """
        subscription = Subscription(self, run_id, self.queue_size)
        if run_id is None:
            self.global_subscribers.add(subscription)
            return subscription

        channel = self.channels.get(run_id)
        if channel is None:
            subscription.end()
        else:
            channel.subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self.global_subscribers.discard(subscription)
        channel = self.channels.get(subscription.run_id) if subscription.run_id else None
        if channel is not None:
            channel.subscribers.discard(subscription)

    def close(self) -> None:
        """End every open stream (application shutdown)."""
        for channel in list(self.channels.values()):
            channel.close()
        for subscription in list(self.global_subscribers):
            subscription.end()
        self.global_subscribers.clear()
