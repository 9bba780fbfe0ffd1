"""Helpers for human-readable source links."""

from __future__ import annotations

from typing import Optional


def default_link(channel: str, item_id: int, grouped: bool = False) -> str:
    """Return the public link for an item when the source did not export one."""

    channel = channel.lstrip("@")
    link = f"https://t.me/{channel}/{item_id}"
    if grouped:
        # Album items open as a single media item instead of the whole album.
        link += "?single"
    return link


def resolve_link(link: Optional[str], channel: str, item_id: int, grouped: bool = False) -> str:
    return link or default_link(channel, item_id, grouped)
