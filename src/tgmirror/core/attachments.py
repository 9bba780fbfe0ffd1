"""Attachment collection for posts.

Media is downloaded from the source and uploaded to the target one item at a
time. Anything that does not fit the target's limits is skipped; a failed
download or upload only drops that one attachment.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from tgmirror.core.models import AttachmentRef, Capabilities, MediaInfo, MediaKind, MessageGroup, SourceItem
from tgmirror.core.ports import SourcePort, TargetPort

LOGGER = logging.getLogger(__name__)


def trim_description(description: Optional[str], max_length: int) -> Optional[str]:
    if description is None or len(description) <= max_length:
        return description
    return description[: max_length - 1].strip() + "…"


def size_limit(media: MediaInfo, capabilities: Capabilities) -> int:
    if media.kind is MediaKind.IMAGE:
        return capabilities.max_bytes_for("image")
    if media.kind is MediaKind.VIDEO:
        return capabilities.max_bytes_for("video")
    return max(capabilities.max_bytes_for("image"), capabilities.max_bytes_for("video"))


def is_supported(media: MediaInfo, capabilities: Capabilities) -> bool:
    """Photos are always accepted; documents need a supported MIME type."""

    if media.kind is MediaKind.IMAGE and media.mime_type is None:
        return True
    return media.mime_type in capabilities.supported_mime_types


class AttachmentCollector:
    def __init__(self, source: SourcePort, target: TargetPort, max_description_length: int) -> None:
        self._source = source
        self._target = target
        self._max_description_length = max_description_length

    async def collect(self, group: MessageGroup, capabilities: Capabilities) -> List[AttachmentRef]:
        result: List[AttachmentRef] = []
        first_kind: Optional[str] = None
        max_description = min(capabilities.max_content_length, self._max_description_length)
        for item in group.items:
            downloaded = await self._download(item, capabilities)
            if downloaded is None:
                continue
            media, data = downloaded
            try:
                attachment = await self._target.upload_attachment(
                    data,
                    media.filename,
                    trim_description(media.description, max_description),
                )
            except Exception:
                LOGGER.warning("Failed to upload attachment of item %s", item.id, exc_info=True)
                continue

            # Target posts cannot mix attachment kinds.
            if first_kind is None:
                first_kind = attachment.kind
            elif attachment.kind != first_kind:
                LOGGER.debug("Skipping %s attachment in a %s post", attachment.kind, first_kind)
                continue
            result.append(attachment)
            if len(result) >= capabilities.max_attachments or first_kind == "video":
                break
        return result

    async def _download(
        self, item: SourceItem, capabilities: Capabilities
    ) -> Optional[Tuple[MediaInfo, bytes]]:
        media = item.media
        if media is None or not is_supported(media, capabilities):
            return None
        limit = size_limit(media, capabilities)
        if media.size is not None and media.size > limit:
            LOGGER.info("Attachment of item %s is too large (%s > %s)", item.id, media.size, limit)
            return None
        try:
            data = await self._source.download_attachment(item)
        except Exception:
            LOGGER.warning("Failed to download attachment of item %s", item.id, exc_info=True)
            return None
        if data is None or len(data) > limit:
            return None
        return media, data
