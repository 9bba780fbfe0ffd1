"""In-process event broadcast.

Every subscriber owns an independent unbounded queue, so a slow or failing
consumer never blocks the producer or any other consumer.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from typing import AsyncIterator, Dict, Optional

from tgmirror.core.models import Event

LOGGER = logging.getLogger(__name__)

_COMPLETED = object()


class Subscription:
    """Capability token returned by ``EventBus.subscribe``."""

    def __init__(self, subscription_id: int, name: str) -> None:
        self.id = subscription_id
        self.name = name
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._completed = False

    def _push(self, item: object) -> None:
        self._queue.put_nowait(item)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Optional[Event]:
        """Return the next event, or None once the bus has completed."""

        if self._completed:
            return None
        item = await self._queue.get()
        if item is _COMPLETED:
            self._completed = True
            return None
        return item  # type: ignore[return-value]

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class EventBus:
    """Registry of subscriber id -> queue with explicit subscribe/unsubscribe."""

    def __init__(self) -> None:
        self._subscribers: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._completed = False

    def subscribe(self, name: str) -> Subscription:
        with self._lock:
            subscription = Subscription(next(self._ids), name)
            if self._completed:
                subscription._push(_COMPLETED)
            else:
                self._subscribers[subscription.id] = subscription
        LOGGER.debug("Subscribed %s (#%s)", name, subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            removed = self._subscribers.pop(subscription.id, None)
        if removed is not None:
            removed._push(_COMPLETED)
            LOGGER.debug("Unsubscribed %s (#%s)", subscription.name, subscription.id)

    def publish(self, event: Event) -> None:
        with self._lock:
            if self._completed:
                LOGGER.warning("Dropping %s event %s: bus already completed", event.kind.value, event.sequence)
                return
            subscribers = list(self._subscribers.values())
        for subscription in subscribers:
            subscription._push(event)

    def complete(self) -> None:
        """Signal end of stream to every subscriber (orderly shutdown)."""

        with self._lock:
            if self._completed:
                return
            self._completed = True
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
        for subscription in subscribers:
            subscription._push(_COMPLETED)
