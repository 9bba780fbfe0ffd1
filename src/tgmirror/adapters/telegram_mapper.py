"""Telegram-to-core mapping adapter.

This keeps Telethon-specific details out of the core pipeline: channel
messages become ``SourceItem`` values and raw channel updates become the
closed set of notification variants.
"""

from __future__ import annotations

from typing import Any, Optional

from telethon.tl import types

from tgmirror.core.models import MediaInfo, MediaKind, PollInfo, SourceItem
from tgmirror.core.notifications import (
    DeletedItems,
    EditedItem,
    NewItem,
    Notification,
    PinnedItems,
    Unsupported,
)


def _plain_text(value: Any) -> str:
    # Newer layers wrap poll texts in TextWithEntities.
    return str(getattr(value, "text", value) or "")


def _document_filename(document: types.Document) -> str:
    for attribute in document.attributes or []:
        if isinstance(attribute, types.DocumentAttributeFilename):
            return attribute.file_name
    return str(document.id)


def _document_media(document: types.Document, description: Optional[str], from_webpage: bool) -> MediaInfo:
    mime_type = document.mime_type or ""
    if mime_type.startswith("video/") or any(
        isinstance(a, types.DocumentAttributeVideo) for a in document.attributes or []
    ):
        kind = MediaKind.VIDEO
    elif mime_type.startswith("image/"):
        kind = MediaKind.IMAGE
    else:
        kind = MediaKind.DOCUMENT
    return MediaInfo(
        kind=kind,
        mime_type=document.mime_type,
        size=document.size,
        filename=_document_filename(document),
        description=description,
        from_webpage=from_webpage,
    )


def _photo_media(photo: types.Photo, description: Optional[str], from_webpage: bool) -> MediaInfo:
    return MediaInfo(
        kind=MediaKind.IMAGE,
        mime_type=None,
        size=None,
        filename=f"{photo.id}.jpg",
        description=description,
        from_webpage=from_webpage,
    )


def media_from_message(media: Any) -> tuple[Optional[MediaInfo], Optional[str]]:
    """Return (attachment info, webpage url) for a message's media."""

    if isinstance(media, types.MessageMediaPhoto) and isinstance(media.photo, types.Photo):
        return _photo_media(media.photo, None, False), None
    if isinstance(media, types.MessageMediaDocument) and isinstance(media.document, types.Document):
        return _document_media(media.document, None, False), None
    if isinstance(media, types.MessageMediaWebPage) and isinstance(media.webpage, types.WebPage):
        page = media.webpage
        if isinstance(page.photo, types.Photo):
            return _photo_media(page.photo, page.description, True), page.url
        if isinstance(page.document, types.Document):
            return _document_media(page.document, page.description, True), page.url
        return None, page.url
    return None, None


def poll_from_message(media: Any) -> Optional[PollInfo]:
    if not isinstance(media, types.MessageMediaPoll):
        return None
    poll = media.poll
    return PollInfo(
        question=_plain_text(poll.question),
        options=[_plain_text(answer.text) for answer in poll.answers],
        multiple=bool(getattr(poll, "multiple_choice", False)),
        duration_seconds=getattr(poll, "close_period", None),
    )


def item_from_message(message: Any) -> SourceItem:
    """Build a core SourceItem from a Telethon channel message."""

    reply_to = getattr(message, "reply_to", None)
    reply_to_id = getattr(reply_to, "reply_to_msg_id", None) or None
    media = getattr(message, "media", None)
    media_info, webpage_url = media_from_message(media)
    return SourceItem(
        id=message.id,
        group_id=getattr(message, "grouped_id", None) or None,
        reply_to_id=reply_to_id,
        text=getattr(message, "message", None) or "",
        webpage_url=webpage_url,
        media=media_info,
        poll=poll_from_message(media),
        raw=message,
    )


def _is_content_message(message: Any) -> bool:
    return message is not None and not isinstance(message, (types.MessageService, types.MessageEmpty))


def _message_channel_id(message: Any) -> Optional[int]:
    peer_id = getattr(message, "peer_id", None)
    return getattr(peer_id, "channel_id", None)


def notification_from_update(update: Any, channel_id: int) -> Optional[Notification]:
    """Translate one raw update; None when it belongs to another chat."""

    if isinstance(update, (types.UpdateNewChannelMessage, types.UpdateEditChannelMessage)):
        message = update.message
        if _message_channel_id(message) != channel_id:
            return None
        if not _is_content_message(message):
            return Unsupported(type(message).__name__, update.pts, update.pts_count)
        item = item_from_message(message)
        if isinstance(update, types.UpdateNewChannelMessage):
            return NewItem(item, update.pts, update.pts_count)
        return EditedItem(item, update.pts, update.pts_count)
    if isinstance(update, types.UpdateDeleteChannelMessages):
        if update.channel_id != channel_id:
            return None
        return DeletedItems(list(update.messages), update.pts, update.pts_count)
    if isinstance(update, types.UpdatePinnedChannelMessages):
        if update.channel_id != channel_id:
            return None
        # Delta only; the source adapter swaps in the full pinned list.
        return PinnedItems(list(update.messages), update.pts, update.pts_count)
    return Unsupported(type(update).__name__)
