"""Group assembler: raw source notifications -> ordered application events.

Two intake paths feed the same event stream:

1) Backlog catch-up at startup, paging "changes since the saved sequence"
   until the source reports it is caught up.
2) Live notification batches, processed in ascending sequence order, with
   grouped items (albums) collected into one pending group that is flushed
   by the next unrelated notification or by a timer, whichever comes first.

Events are emitted exactly once each and in non-decreasing sequence order.
Nothing here persists progress except the very first checkpoint seed; the
delivery engine owns the checkpoint once events are applied.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

from tgmirror.core.config import AssemblerConfig
from tgmirror.core.models import Event, EventKind, MessageGroup, SequenceCheckpoint, SourceItem
from tgmirror.core.notifications import (
    DeletedItems,
    DifferencePage,
    EditedItem,
    NewItem,
    Notification,
    NotificationBatch,
    PinnedItems,
    Unsupported,
)
from tgmirror.core.ports import CheckpointStore, SourcePort

LOGGER = logging.getLogger(__name__)

# How long the live loop waits for a batch before re-checking the stop signal.
LIVE_POLL_TIMEOUT = 1.0


class GroupState(str, Enum):
    OPEN = "open"
    FLUSHING = "flushing"
    FLUSHED = "flushed"


@dataclass
class PendingGroup:
    """Grouped items collected from live notifications, not yet emitted."""

    group_id: int
    items: List[SourceItem] = field(default_factory=list)
    last_sequence: int = 0
    consumed: int = 0
    state: GroupState = GroupState.OPEN


def split_runs(items: Iterable[SourceItem]) -> List[MessageGroup]:
    """Collapse consecutive items sharing a non-zero group id into one group."""

    groups: List[MessageGroup] = []
    run: List[SourceItem] = []
    for item in items:
        if run and (not item.is_grouped or item.group_id != run[0].group_id):
            groups.append(MessageGroup.of(run, run[0].group_id or 0))
            run = []
        if item.is_grouped:
            run.append(item)
        else:
            groups.append(MessageGroup.single(item))
    if run:
        groups.append(MessageGroup.of(run, run[0].group_id or 0))
    return groups


class GroupAssembler:
    """Turns backlog pages and live batches into complete ``Event`` values."""

    def __init__(
        self,
        source: SourcePort,
        checkpoints: CheckpointStore,
        emit: Callable[[Event], None],
        config: AssemblerConfig,
    ) -> None:
        self._source = source
        self._checkpoints = checkpoints
        self._emit = emit
        self._config = config
        self._lock = asyncio.Lock()
        self._pending: Optional[PendingGroup] = None
        self._processed_group_ids: Set[int] = set()
        self._timers: Dict[int, "asyncio.Task[None]"] = {}
        self._cursor = 0

    @property
    def cursor(self) -> int:
        """Highest source sequence seen (not necessarily applied)."""

        return self._cursor

    async def run(self, stop: asyncio.Event) -> None:
        """Catch up, sync pins, then process live batches until ``stop``."""

        try:
            await self.catch_up(stop)
            if stop.is_set():
                return
            await self.sync_pins()
            LOGGER.info("Listening to live source updates")
            while not stop.is_set():
                batch = await self._source.next_batch(LIVE_POLL_TIMEOUT)
                if batch is not None:
                    await self.handle_batch(batch)
        finally:
            self.close()

    async def catch_up(self, stop: Optional[asyncio.Event] = None) -> int:
        """Replay the backlog since the saved checkpoint; return the new cursor."""

        checkpoint = self._checkpoints.get_checkpoint()
        if checkpoint is None or checkpoint.applied <= 0:
            # Fresh start: mirror from "now", there is no backlog to replay.
            sequence = await self._source.current_sequence()
            self._checkpoints.save_checkpoint(SequenceCheckpoint(applied=sequence))
            self._cursor = sequence
            LOGGER.info("No saved sequence, starting from %s", sequence)
            return sequence

        cursor = checkpoint.applied
        LOGGER.info("Checking missed source updates since sequence %s", cursor)
        while stop is None or not stop.is_set():
            page = await self._source.fetch_difference(cursor)
            LOGGER.info(
                "Got %s new items and %s other updates, %sfinal",
                len(page.items),
                len(page.other),
                "" if page.is_final else "not ",
            )
            await self._emit_page(page, cursor)
            cursor = max(cursor, page.new_sequence)
            if page.is_final:
                break
        self._cursor = cursor
        LOGGER.info("Backlog replay done at sequence %s", cursor)
        return cursor

    async def sync_pins(self) -> None:
        """Emit the full current pin list so the target converges on startup."""

        pinned = await self._source.pinned_item_ids()
        LOGGER.info("Got %s pinned item(s) from the source", len(pinned))
        self._emit(
            Event(
                kind=EventKind.PIN,
                group=MessageGroup.of_ids(pinned),
                sequence=self._cursor,
                expected_increment=0,
            )
        )

    async def _emit_page(self, page: DifferencePage, since: int) -> None:
        events: List[Event] = []
        for group in split_runs(page.items):
            link = await self._export_link(group.primary.id, group.id != 0)
            events.append(
                Event(
                    kind=EventKind.POST,
                    group=group,
                    sequence=since,
                    expected_increment=len(group.items),
                    link=link,
                )
            )
            if group.id:
                LOGGER.info("Assembled group %s of %s items from backlog", group.id, len(group.items))
        for notification in page.other:
            event = await self._translate(notification, since)
            if event is not None:
                events.append(event)
        if events:
            # Only the last event of a page carries the page sequence.
            events[-1] = replace(events[-1], sequence=page.new_sequence)
        for event in events:
            self._emit(event)

    async def handle_batch(self, batch: NotificationBatch) -> None:
        """Process one live batch in ascending sequence order."""

        notifications = sorted(batch.notifications, key=lambda n: n.sequence)
        if len(notifications) > 1:
            LOGGER.info("Received %s updates", len(notifications))
        for notification in notifications:
            try:
                await self._handle(notification)
            except Exception:
                LOGGER.exception("Failed to process %s", type(notification).__name__)

    async def _handle(self, notification: Notification) -> None:
        if isinstance(notification, Unsupported):
            LOGGER.debug("Ignoring update of type %s", notification.type_name)
            return
        if notification.sequence <= self._cursor:
            LOGGER.debug("Skipping update at sequence %s, already covered", notification.sequence)
            return
        expected = self._cursor + notification.consumed
        if self._cursor and notification.sequence != expected:
            LOGGER.warning(
                "Sequence gap: cursor %s, expected %s, got %s", self._cursor, expected, notification.sequence
            )

        async with self._lock:
            if isinstance(notification, NewItem) and notification.item.is_grouped:
                await self._append_locked(notification)
            else:
                if self._pending is not None:
                    await self._flush_locked(self._pending)
                event = await self._translate(notification, notification.sequence)
                if event is not None:
                    self._emit(event)
            self._cursor = max(self._cursor, notification.sequence)

    async def _translate(self, notification: Notification, sequence: int) -> Optional[Event]:
        match notification:
            case NewItem(item=item, consumed=consumed):
                link = await self._export_link(item.id, item.is_grouped)
                return Event(EventKind.POST, MessageGroup.single(item), sequence, consumed, link)
            case EditedItem(item=item, consumed=consumed):
                link = await self._export_link(item.id, item.is_grouped)
                return Event(EventKind.EDIT, MessageGroup.single(item), sequence, consumed, link)
            case DeletedItems(item_ids=item_ids, consumed=consumed):
                return Event(EventKind.DELETE, MessageGroup.of_ids(item_ids), sequence, consumed)
            case PinnedItems(item_ids=item_ids, consumed=consumed):
                return Event(EventKind.PIN, MessageGroup.of_ids(item_ids), sequence, consumed)
            case Unsupported(type_name=type_name):
                LOGGER.debug("Ignoring update of type %s", type_name)
                return None
        LOGGER.warning("Unknown notification %r", notification)
        return None

    async def _append_locked(self, notification: NewItem) -> None:
        item = notification.item
        group_id = item.group_id or 0
        if group_id in self._processed_group_ids:
            LOGGER.warning("Group %s was already emitted, dropping late item %s", group_id, item.id)
            return

        pending = self._pending
        if pending is not None and pending.group_id != group_id:
            await self._flush_locked(pending)
            pending = None
        if pending is None:
            pending = PendingGroup(group_id=group_id)
            self._pending = pending
            self._timers[group_id] = asyncio.create_task(self._flush_later(pending))

        pending.items.append(item)
        pending.last_sequence = notification.sequence
        pending.consumed += notification.consumed
        LOGGER.debug("Added item %s to pending group %s", item.id, group_id)

    async def _flush_later(self, pending: PendingGroup) -> None:
        await asyncio.sleep(self._config.flush_delay)
        async with self._lock:
            LOGGER.debug("Flush timer fired for group %s", pending.group_id)
            await self._flush_locked(pending)

    async def _flush_locked(self, pending: PendingGroup) -> None:
        if pending.state is not GroupState.OPEN:
            return
        pending.state = GroupState.FLUSHING
        if self._pending is pending:
            self._pending = None
        timer = self._timers.pop(pending.group_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

        if pending.group_id in self._processed_group_ids:
            LOGGER.warning(
                "Group %s was already emitted (new size %s)", pending.group_id, len(pending.items)
            )
            pending.state = GroupState.FLUSHED
            return
        self._processed_group_ids.add(pending.group_id)

        group = MessageGroup.of(pending.items, pending.group_id)
        link = await self._export_link(group.items[-1].id, True)
        self._emit(
            Event(
                kind=EventKind.POST,
                group=group,
                sequence=pending.last_sequence,
                expected_increment=pending.consumed,
                link=link,
            )
        )
        pending.state = GroupState.FLUSHED
        LOGGER.info("Emitted group %s of %s items", group.id, len(group.items))

    async def _export_link(self, item_id: int, grouped: bool) -> Optional[str]:
        try:
            return await self._source.export_link(item_id, grouped)
        except Exception:
            LOGGER.warning("Failed to export link for item %s", item_id, exc_info=True)
            return None

    def close(self) -> None:
        """Abandon pending flush timers; the groups come back with the next catch-up."""

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        if self._pending is not None:
            LOGGER.info(
                "Abandoning pending group %s of %s items", self._pending.group_id, len(self._pending.items)
            )
            self._pending = None
