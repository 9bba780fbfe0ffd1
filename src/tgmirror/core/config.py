"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass

from tgmirror.core.models import Visibility


@dataclass(frozen=True)
class AssemblerConfig:
    """Grouping settings for the group assembler."""

    flush_delay: float = 10.0


@dataclass(frozen=True)
class DeliveryConfig:
    """Retry, visibility and locale settings for the delivery engine."""

    channel: str
    retry_cooldown: float = 60.0
    attachment_retry_attempts: int = 15
    attachment_retry_delay: float = 20.0
    language: str = "ru"
    normal_visibility: Visibility = Visibility.UNLISTED
    important_visibility: Visibility = Visibility.PUBLIC


@dataclass(frozen=True)
class RateLimitConfig:
    """Sliding window for elevated visibility grants."""

    window: float
    capacity: int


@dataclass(frozen=True)
class WatchdogConfig:
    threshold: float
