"""Fan-out of protocol messages to connected observers with replay-on-connect."""

import asyncio
import logging

from twofer.protocol import DURABLE_TYPES, Message

logger = logging.getLogger(__name__)

_DEFAULT_QUEUE_SIZE = 1000


class Subscription:
    """One observer's view of the feed: a bounded queue drained by the observer.

    Iterate with ``async for message in subscription``; iteration ends once
    the subscription is closed and the queue has been drained.
    """

    def __init__(self, queue_size: int) -> None:
        self._queue: asyncio.Queue[Message | None] = asyncio.Queue(maxsize=queue_size)
        self.closed = False

    def offer(self, message: Message) -> bool:
        """Enqueue without blocking. Returns False if the observer is too slow."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Full queue: drop the oldest entry to make room for the end marker.
            self._queue.get_nowait()
            self._queue.put_nowait(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Message:
        message = await self._queue.get()
        if message is None:
            raise StopAsyncIteration
        return message


class Broadcaster:
    """Delivers every broadcast message to all connected observers.

    The last message of each durable type is cached and replayed to observers
    that connect later, so they can rebuild the current state of the debate.
    """

    def __init__(self, queue_size: int = _DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscriptions: set[Subscription] = set()
        self._cache: dict[str, Message] = {}

    @property
    def observer_count(self) -> int:
        return len(self._subscriptions)

    def cached(self, message_type: str) -> Message | None:
        return self._cache.get(message_type)

    def connect(self) -> Subscription:
        """Register a new observer and replay the cached durable messages to it."""
        subscription = Subscription(self._queue_size)
        for message in self._cache.values():
            subscription.offer(message)
        self._subscriptions.add(subscription)
        logger.debug("Observer connected (%d total)", len(self._subscriptions))
        return subscription

    def disconnect(self, subscription: Subscription) -> None:
        subscription.close()
        if subscription in self._subscriptions:
            self._subscriptions.discard(subscription)
            logger.debug("Observer disconnected (%d left)", len(self._subscriptions))

    def broadcast(self, message: Message) -> None:
        """Send to every connected observer. Never blocks the caller.

        An observer whose queue is full is disconnected; it can reconnect and
        catch up from the replay cache.
        """
        if message["type"] in DURABLE_TYPES:
            self._cache[message["type"]] = message

        for subscription in list(self._subscriptions):
            if not subscription.offer(message):
                logger.warning("Dropping slow observer (queue full)")
                self.disconnect(subscription)

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            self.disconnect(subscription)
