"""Cooperative cancellation helpers shared by long-running loops."""

from __future__ import annotations

import asyncio


class StopRequested(Exception):
    """Raised from deep inside a loop iteration when the stop signal is seen."""


async def wait_for_stop(stop: asyncio.Event, timeout: float) -> bool:
    """Sleep up to ``timeout`` seconds; return True if ``stop`` was raised."""

    if stop.is_set():
        return True
    if timeout <= 0:
        return False
    try:
        await asyncio.wait_for(stop.wait(), timeout)
    except asyncio.TimeoutError:
        return False
    return True
