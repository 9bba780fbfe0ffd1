"""Telethon-backed source adapter for a single channel.

Implements the core SourcePort: backlog differences, live update batches,
message links, pinned messages and media downloads.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any, List, Optional

from telethon import TelegramClient, events, functions, types, utils

from tgmirror.adapters.telegram_mapper import item_from_message, notification_from_update
from tgmirror.core.errors import SourceError
from tgmirror.core.models import SourceItem
from tgmirror.core.notifications import DifferencePage, Notification, NotificationBatch, PinnedItems
from tgmirror.get_session import authorize

LOGGER = logging.getLogger(__name__)

DIFFERENCE_PAGE_LIMIT = 100

_CHANNEL_UPDATE_TYPES = (
    types.UpdateNewChannelMessage,
    types.UpdateEditChannelMessage,
    types.UpdateDeleteChannelMessages,
    types.UpdatePinnedChannelMessages,
)


class TelegramSource:
    """Source adapter reading one channel through a user account."""

    def __init__(self, client: TelegramClient, channel: str) -> None:
        self._client = client
        self._channel_name = channel
        self._channel: Optional[types.Channel] = None
        self._input_channel: Optional[types.InputChannel] = None
        self._updates: "asyncio.Queue[Notification]" = asyncio.Queue()

    @property
    def channel_id(self) -> int:
        if self._channel is None:
            raise SourceError("Channel is not resolved yet, call start() first")
        return self._channel.id

    async def start(self) -> None:
        """Log in, resolve the channel and begin buffering live updates."""

        await self._client.connect()
        await authorize(self._client)
        me = await self._client.get_me()
        LOGGER.info("Logged in as %s (id %s) on telegram", utils.get_display_name(me), me.id)

        try:
            entity = await self._client.get_entity(self._channel_name)
        except ValueError as e:
            raise SourceError(f"Channel {self._channel_name} is not available") from e
        if not isinstance(entity, types.Channel):
            raise SourceError(f"{self._channel_name} is not a channel")
        self._channel = entity
        self._input_channel = utils.get_input_channel(entity)
        LOGGER.info("Reading channel #%s: %s", entity.id, entity.title)

        # Buffer from now on; the assembler drops anything its backlog covered.
        self._client.add_event_handler(self._on_raw_update, events.Raw(types=_CHANNEL_UPDATE_TYPES))

    async def stop(self) -> None:
        self._client.remove_event_handler(self._on_raw_update)
        await self._client.disconnect()

    async def _on_raw_update(self, update: Any) -> None:
        try:
            notification = notification_from_update(update, self.channel_id)
            if notification is None:
                return
            if isinstance(notification, PinnedItems):
                notification = dataclasses.replace(notification, item_ids=await self.pinned_item_ids())
            self._updates.put_nowait(notification)
        except Exception:
            LOGGER.exception("Failed to queue update of type %s", type(update).__name__)

    async def next_batch(self, timeout: float) -> Optional[NotificationBatch]:
        try:
            first = await asyncio.wait_for(self._updates.get(), timeout)
        except asyncio.TimeoutError:
            return None
        notifications: List[Notification] = [first]
        while not self._updates.empty():
            notifications.append(self._updates.get_nowait())
        return NotificationBatch(notifications)

    async def current_sequence(self) -> int:
        result = await self._client(
            functions.messages.GetPeerDialogsRequest(
                peers=[types.InputDialogPeer(peer=utils.get_input_peer(self._channel))]
            )
        )
        dialogs = [d for d in result.dialogs if isinstance(d, types.Dialog)]
        if len(dialogs) != 1 or dialogs[0].pts is None:
            raise SourceError("Failed to fetch current channel status")
        return dialogs[0].pts

    async def fetch_difference(self, since_sequence: int) -> DifferencePage:
        result = await self._client(
            functions.updates.GetChannelDifferenceRequest(
                channel=self._input_channel,
                filter=types.ChannelMessagesFilterEmpty(),
                pts=since_sequence,
                limit=DIFFERENCE_PAGE_LIMIT,
                force=True,
            )
        )
        if isinstance(result, types.updates.ChannelDifferenceEmpty):
            return DifferencePage(items=[], new_sequence=result.pts, is_final=True)
        if isinstance(result, types.updates.ChannelDifference):
            items = [
                item_from_message(message)
                for message in result.new_messages
                if isinstance(message, types.Message)
            ]
            other: List[Notification] = []
            for update in result.other_updates:
                notification = notification_from_update(update, self.channel_id)
                if notification is None:
                    continue
                if isinstance(notification, PinnedItems):
                    notification = dataclasses.replace(notification, item_ids=await self.pinned_item_ids())
                other.append(notification)
            return DifferencePage(items=items, new_sequence=result.pts, is_final=bool(result.final), other=other)

        LOGGER.warning("Unsupported channel difference of type %s, skipping ahead", type(result).__name__)
        dialog = getattr(result, "dialog", None)
        pts = getattr(dialog, "pts", None) or since_sequence
        return DifferencePage(items=[], new_sequence=pts, is_final=True)

    async def export_link(self, item_id: int, grouped: bool = False) -> Optional[str]:
        result = await self._client(
            functions.channels.ExportMessageLinkRequest(
                channel=self._input_channel,
                id=item_id,
                grouped=grouped,
            )
        )
        return result.link

    async def pinned_item_ids(self) -> List[int]:
        return [
            message.id
            async for message in self._client.iter_messages(
                self._channel, limit=None, filter=types.InputMessagesFilterPinned()
            )
        ]

    async def download_attachment(self, item: SourceItem) -> Optional[bytes]:
        message = item.raw
        media = getattr(message, "media", None)
        if isinstance(media, types.MessageMediaWebPage) and isinstance(media.webpage, types.WebPage):
            media = media.webpage.photo or media.webpage.document
        if media is None:
            return None
        return await self._client.download_media(media, file=bytes)
