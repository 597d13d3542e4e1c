"""Topic-based publish/subscribe used to fan events out to connections.

The bus logic only talks to the PubSub interface, so the transport behind a
handler (WebSocket, server-sent events, polling buffer) can change without
touching it.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Awaitable, Callable, Collection, Iterable

from clinicsync.errors import BrokerUnavailable
from clinicsync.sync.events import OutboundEvent

logger = logging.getLogger(__name__)

Handler = Callable[[OutboundEvent], Awaitable[None]]


class PubSub(ABC):
    """Abstract publish/subscribe transport."""

    @abstractmethod
    async def subscribe(self, topic: str, handler: Handler) -> None:
        """Subscribe handler to topic. Subscribing twice is a no-op."""

    @abstractmethod
    async def unsubscribe(self, topic: str, handler: Handler) -> None:
        """Remove handler from topic."""

    @abstractmethod
    async def unsubscribe_all(self, handler: Handler) -> None:
        """Remove handler from every topic it is subscribed to."""

    @abstractmethod
    async def publish(
        self,
        topics: str | Iterable[str],
        event: OutboundEvent,
        exclude: Collection[Handler] = (),
    ) -> int:
        """Deliver event once to every handler subscribed to any of topics.

        Returns:
            Number of handlers the event was dispatched to.

        Raises:
            BrokerUnavailable: If the transport is closed or unreachable.
        """

    @abstractmethod
    async def flush(self) -> None:
        """Wait until every dispatched event has been handed to its handler."""

    @abstractmethod
    async def close(self) -> None:
        """Drain pending deliveries and release resources."""


class _Mailbox:
    """Ordered outbound queue for one handler, drained by a writer task."""

    def __init__(self, handler: Handler, maxsize: int) -> None:
        self.handler = handler
        self.queue: asyncio.Queue[OutboundEvent | None] = asyncio.Queue(maxsize=maxsize)
        self.task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                if event is None:
                    return
                await self.handler(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                # A failing subscriber must not stall delivery to the others
                logger.warning(
                    "Delivery of %s to subscriber failed",
                    event.event if event else None,
                    exc_info=True,
                )
            finally:
                self.queue.task_done()

    def put(self, event: OutboundEvent) -> bool:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Subscriber mailbox full, dropping %s event", event.event)
            return False
        return True

    def stop(self) -> None:
        # Sentinel is queued behind pending events so they are still delivered
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            self.task.cancel()


class InMemoryPubSub(PubSub):
    """Single-process PubSub with one ordered mailbox per handler.

    Events are enqueued synchronously inside publish(), so every handler sees
    events in the order publish() was called, and a handler subscribed to
    several matching topics receives each event only once.
    """

    def __init__(self, mailbox_size: int = 1000) -> None:
        self._mailbox_size = mailbox_size
        self._topics: dict[str, list[Handler]] = defaultdict(list)
        self._subscriptions: dict[Handler, set[str]] = defaultdict(set)
        self._mailboxes: dict[Handler, _Mailbox] = {}
        self._closed = False

    async def subscribe(self, topic: str, handler: Handler) -> None:
        if self._closed:
            raise BrokerUnavailable("PubSub is closed")
        if topic in self._subscriptions[handler]:
            return
        self._topics[topic].append(handler)
        self._subscriptions[handler].add(topic)
        if handler not in self._mailboxes:
            self._mailboxes[handler] = _Mailbox(handler, self._mailbox_size)

    async def unsubscribe(self, topic: str, handler: Handler) -> None:
        topics = self._subscriptions.get(handler)
        if not topics or topic not in topics:
            return
        topics.discard(topic)
        self._remove_from_topic(topic, handler)
        if not topics:
            self._drop_handler(handler)

    async def unsubscribe_all(self, handler: Handler) -> None:
        for topic in list(self._subscriptions.get(handler, ())):
            self._remove_from_topic(topic, handler)
        self._drop_handler(handler)

    async def publish(
        self,
        topics: str | Iterable[str],
        event: OutboundEvent,
        exclude: Collection[Handler] = (),
    ) -> int:
        if self._closed:
            raise BrokerUnavailable("PubSub is closed")
        if isinstance(topics, str):
            topics = (topics,)

        seen: set[Handler] = set()
        dispatched = 0
        for topic in topics:
            for handler in self._topics.get(topic, ()):
                if handler in seen or handler in exclude:
                    continue
                seen.add(handler)
                if self._mailboxes[handler].put(event):
                    dispatched += 1
        return dispatched

    def subscribers(self, topic: str) -> list[Handler]:
        return list(self._topics.get(topic, ()))

    def topics_of(self, handler: Handler) -> set[str]:
        return set(self._subscriptions.get(handler, ()))

    async def flush(self) -> None:
        await asyncio.gather(*(mb.queue.join() for mb in list(self._mailboxes.values())))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.flush()
        mailboxes = list(self._mailboxes.values())
        for mailbox in mailboxes:
            mailbox.stop()
        await asyncio.gather(*(mb.task for mb in mailboxes), return_exceptions=True)
        self._mailboxes.clear()
        self._topics.clear()
        self._subscriptions.clear()
        logger.info("In-memory pubsub closed")

    def _remove_from_topic(self, topic: str, handler: Handler) -> None:
        handlers = self._topics.get(topic)
        if handlers is None:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del self._topics[topic]

    def _drop_handler(self, handler: Handler) -> None:
        self._subscriptions.pop(handler, None)
        mailbox = self._mailboxes.pop(handler, None)
        if mailbox is not None:
            mailbox.stop()
