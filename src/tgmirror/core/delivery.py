"""Delivery engine: applies events to the target platform.

One engine instance consumes one bus subscription and applies events strictly
one at a time, in order. A failing event is retried forever after a fixed
cooldown, so nothing is skipped and nothing is reordered:

    FETCHING -> APPLYING -> (success) FETCHING
                         -> (failure) COOLDOWN -> APPLYING

The dedup ledger (mapping table) makes Post replays a no-op; edits, deletes
and pin reconciliation are naturally idempotent.

Known gap: if publishing succeeds but the mapping write fails, the retried
event publishes again. The target idempotency key derived from the source
item id narrows this to the target's key retention window.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Dict, List, Optional

from tgmirror.core.attachments import AttachmentCollector
from tgmirror.core.bus import Subscription
from tgmirror.core.cancellation import StopRequested, wait_for_stop
from tgmirror.core.config import DeliveryConfig
from tgmirror.core.errors import AttachmentsProcessingError, TargetNotFoundError
from tgmirror.core.links import resolve_link
from tgmirror.core.models import (
    AttachmentRef,
    Capabilities,
    Event,
    EventKind,
    MappingEntry,
    SequenceCheckpoint,
    StatusContent,
    TargetPost,
    Visibility,
)
from tgmirror.core.ports import ContentFormatter, Storage, TargetPort
from tgmirror.core.rate_limiter import SlidingWindowLimiter
from tgmirror.core.rules_engine import ImportanceClassifier

LOGGER = logging.getLogger(__name__)

# How long a fetch waits on the subscription before re-checking the stop signal.
FETCH_POLL_TIMEOUT = 1.0


class DeliveryState(str, Enum):
    FETCHING = "fetching"
    APPLYING = "applying"
    COOLDOWN = "cooldown"
    STOPPED = "stopped"


class DeliveryEngine:
    """Single-consumer applier of ``Event`` values."""

    def __init__(
        self,
        target: TargetPort,
        storage: Storage,
        formatter: ContentFormatter,
        collector: AttachmentCollector,
        classifier: ImportanceClassifier,
        limiter: SlidingWindowLimiter,
        config: DeliveryConfig,
    ) -> None:
        self._target = target
        self._storage = storage
        self._formatter = formatter
        self._collector = collector
        self._classifier = classifier
        self._limiter = limiter
        self._config = config
        self._capabilities: Optional[Capabilities] = None
        self._pins: Dict[int, TargetPost] = {}
        self._stop = asyncio.Event()
        self.state = DeliveryState.STOPPED

    @property
    def pins(self) -> Dict[int, TargetPost]:
        return dict(self._pins)

    async def start(self) -> None:
        """Load target limits and rebuild the pin set from persisted mappings."""

        self._capabilities = await self._target.get_capabilities()
        caps = self._capabilities
        LOGGER.info(
            "Target limits: status length=%s, attachments=%s, reserved per url=%s",
            caps.max_content_length,
            caps.max_attachments,
            caps.per_url_reserved_chars,
        )
        account_id = await self._target.get_account_id()
        pinned = await self._target.list_pinned(account_id)
        by_target_id = {post.id: post for post in pinned}
        for entry in self._storage.find_by_target_ids(by_target_id):
            self._pins[entry.source_id] = by_target_id[entry.target_id]
        LOGGER.info("Got %s mirrored pin(s) on the target", len(self._pins))

    async def run(self, subscription: Subscription, stop: asyncio.Event) -> None:
        """Consume ``subscription`` until it completes or ``stop`` is raised."""

        self._stop = stop
        try:
            while not stop.is_set():
                self.state = DeliveryState.FETCHING
                try:
                    event = await asyncio.wait_for(subscription.get(), FETCH_POLL_TIMEOUT)
                except asyncio.TimeoutError:
                    continue
                if event is None:
                    LOGGER.info("Event stream completed")
                    break
                if not await self.deliver(event):
                    break
        finally:
            self.state = DeliveryState.STOPPED

    async def deliver(self, event: Event) -> bool:
        """Apply ``event``, retrying forever; False if stopped before success."""

        while True:
            self.state = DeliveryState.APPLYING
            try:
                await self.apply(event)
                return True
            except StopRequested:
                return False
            except Exception:
                LOGGER.exception(
                    "Failed to apply %s event at sequence %s, will retry in %ss",
                    event.kind.value,
                    event.sequence,
                    self._config.retry_cooldown,
                )
            self.state = DeliveryState.COOLDOWN
            if await wait_for_stop(self._stop, self._config.retry_cooldown):
                return False

    async def apply(self, event: Event) -> None:
        match event.kind:
            case EventKind.POST:
                await self._apply_post(event)
            case EventKind.EDIT:
                await self._apply_edit(event)
            case EventKind.DELETE:
                await self._apply_delete(event)
            case EventKind.PIN:
                await self._apply_pin(event)
            case _:
                LOGGER.error("Unknown event type %s", event.kind)

    async def _get_capabilities(self) -> Capabilities:
        if self._capabilities is None:
            self._capabilities = await self._target.get_capabilities()
        return self._capabilities

    async def _apply_post(self, event: Event) -> None:
        group = event.group
        item = group.primary
        if self._storage.get_mapping(item.id) is not None:
            LOGGER.info("Item %s is already mirrored, skipping", item.id)
            self._advance(event)
            return
        if len(group.items) == 1 and item.is_media_only and item.is_grouped:
            LOGGER.debug("Media-only item %s with a group flag, skipping", item.id)
            self._advance(event)
            return

        reply_to_id = None
        if item.reply_to_id:
            reply_map = self._storage.get_mapping(item.reply_to_id)
            if reply_map is not None:
                reply_to_id = reply_map.target_id
                LOGGER.debug("Replying to %s", reply_to_id)

        caps = await self._get_capabilities()
        attachments = await self._collector.collect(group, caps)
        LOGGER.debug(
            "Collected %s attachment(s) of kinds: %s",
            len(attachments),
            ", ".join(a.kind for a in attachments),
        )
        link = resolve_link(event.link, self._config.channel, item.id, group.id != 0)
        content = self._formatter.format(item, link, caps)
        visibility = self._visibility(content)
        post = await self._publish(content, reply_to_id, attachments, visibility, f"tgmirror-{item.id}")

        self._storage.record_publish(
            MappingEntry(source_id=item.id, target_id=post.id, sequence_at_creation=event.sequence),
            self._next_checkpoint(event),
        )
        LOGGER.info(
            "Posted new status from %s to %s (+%s/%s)%s",
            link,
            post.url,
            event.expected_increment,
            event.sequence,
            f" ({post.visibility})" if visibility is self._config.important_visibility else "",
        )

    async def _publish(
        self,
        content: StatusContent,
        reply_to_id: Optional[str],
        attachments: List[AttachmentRef],
        visibility: Visibility,
        idempotency_key: Optional[str] = None,
    ) -> TargetPost:
        tries = 0
        while True:
            try:
                return await self._target.publish(
                    content, reply_to_id, attachments, visibility, self._config.language, idempotency_key
                )
            except AttachmentsProcessingError:
                if not attachments:
                    raise
                tries += 1
                if tries > self._config.attachment_retry_attempts:
                    LOGGER.warning("Failed to post with media attachments, posting without them")
                    attachments = []
                    continue
                LOGGER.info("Waiting for media upload to be processed (attempt %s)", tries)
                if await wait_for_stop(self._stop, self._config.attachment_retry_delay):
                    raise StopRequested()

    def _visibility(self, content: StatusContent) -> Visibility:
        rule_match = self._classifier.classify(content.title, content.body)
        if rule_match is None:
            return self._config.normal_visibility
        # Classifier first so only important posts consume limiter slots.
        if self._limiter.try_reserve():
            LOGGER.info("Important post (%s: %s)", rule_match.rule_name, rule_match.reason)
            return self._config.important_visibility
        return self._config.normal_visibility

    async def _apply_edit(self, event: Event) -> None:
        caps = await self._get_capabilities()
        for item in event.group.items:
            try:
                mapping = self._storage.get_mapping(item.id)
                if mapping is None:
                    continue
                current = await self._target.get(mapping.target_id)
                link = resolve_link(event.link, self._config.channel, item.id, item.is_grouped)
                content = self._formatter.format(item, link, caps)
                # Only visible text is compared; attachments are kept as they are.
                if (content.title or "") == (current.spoiler_text or "") and content.body == (current.text or ""):
                    LOGGER.info("Edit did not change visible content (%s -> %s)", link, current.url)
                    continue
                updated = await self._target.edit(
                    mapping.target_id, content, current.attachment_ids, self._config.language
                )
                LOGGER.info("Updated status from %s at %s", link, updated.url)
            except Exception:
                LOGGER.warning("Failed to update status for item %s", item.id, exc_info=True)
        self._advance(event)

    async def _apply_delete(self, event: Event) -> None:
        for item in event.group.items:
            mapping = self._storage.get_mapping(item.id)
            if mapping is None:
                continue
            try:
                await self._target.delete(mapping.target_id)
                LOGGER.info("Removed status %s", mapping.target_id)
            except TargetNotFoundError:
                LOGGER.info("Status %s is already gone", mapping.target_id)
            self._storage.delete_mapping(item.id)
            self._pins.pop(item.id, None)
        self._advance(event)

    async def _apply_pin(self, event: Event) -> None:
        pinned_ids = [item.id for item in event.group.items]
        wanted = set(pinned_ids)
        to_unpin = [source_id for source_id in self._pins if source_id not in wanted]
        to_pin = [source_id for source_id in pinned_ids if source_id not in self._pins]

        for source_id in to_unpin:
            post = self._pins[source_id]
            try:
                await self._target.unpin(post.id)
                del self._pins[source_id]
                LOGGER.info("Unpinned %s", post.url)
            except Exception:
                LOGGER.warning("Failed to unpin %s", post.url, exc_info=True)

        for source_id in to_pin:
            mapping = self._storage.get_mapping(source_id)
            if mapping is None:
                LOGGER.debug("Pinned item %s is not mirrored, skipping", source_id)
                continue
            try:
                post = await self._target.pin(mapping.target_id)
                self._pins[source_id] = post
                LOGGER.info("Pinned %s", post.url)
            except Exception:
                LOGGER.warning("Failed to pin %s", mapping.target_id, exc_info=True)
        self._advance(event)

    def _next_checkpoint(self, event: Event) -> SequenceCheckpoint:
        current = self._storage.get_checkpoint()
        saved = current.applied if current is not None else 0
        expected = saved + 1
        if current is not None and current.expected_next is not None:
            expected = current.expected_next
        if event.sequence <= saved:
            # Stale: mid-page backlog events and the startup pin sync.
            LOGGER.debug("Ignoring request to move sequence from %s to %s", saved, event.sequence)
            return SequenceCheckpoint(applied=saved, expected_next=expected)
        if event.sequence != expected:
            LOGGER.warning(
                "Unexpected sequence: saved %s, expected %s, but event has %s", saved, expected, event.sequence
            )
        return SequenceCheckpoint(
            applied=event.sequence,
            expected_next=event.sequence + event.expected_increment,
        )

    def _advance(self, event: Event) -> None:
        self._storage.save_checkpoint(self._next_checkpoint(event))
