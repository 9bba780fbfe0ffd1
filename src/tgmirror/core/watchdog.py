"""Liveness watchdog.

Second observer on the event bus. Every event pushes the deadline back; if
no event shows up within the threshold, the restart callback fires once.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Optional

from tgmirror.core.bus import Subscription
from tgmirror.core.config import WatchdogConfig
from tgmirror.core.models import Event, EventKind

LOGGER = logging.getLogger(__name__)

_RESETTING_KINDS = {EventKind.POST, EventKind.EDIT, EventKind.DELETE, EventKind.PIN}


class Watchdog:
    def __init__(self, config: WatchdogConfig, on_timeout: Callable[[], None]) -> None:
        self._threshold = config.threshold
        self._on_timeout = on_timeout
        self._lock = threading.Lock()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._generation = 0
        self._fired = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def fired(self) -> bool:
        return self._fired

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._reset()

    def _reset(self) -> None:
        with self._lock:
            if self._fired or self._loop is None:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            self._timer = self._loop.call_later(self._threshold, self._fire, self._generation)

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A reset that raced this callback bumped the generation.
            if self._fired or generation != self._generation:
                return
            self._fired = True
            self._timer = None
        LOGGER.error("No events for %ss, requesting restart", self._threshold)
        self._on_timeout()

    def on_next(self, event: Event) -> None:
        LOGGER.debug("Watchdog got %s event", event.kind.value)
        if event.kind in _RESETTING_KINDS:
            self._reset()

    def on_completed(self) -> None:
        self.dispose()

    def dispose(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1

    async def run(self, subscription: Subscription, stop: asyncio.Event) -> None:
        self.start()
        try:
            while not stop.is_set():
                try:
                    event = await asyncio.wait_for(subscription.get(), 1.0)
                except asyncio.TimeoutError:
                    continue
                if event is None:
                    break
                self.on_next(event)
        finally:
            self.on_completed()
