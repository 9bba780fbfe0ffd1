"""Raw source notifications as a closed set of variants.

Adapters translate integration-specific updates into these types; the
group assembler dispatches on them with an exhaustive ``match``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Union

from tgmirror.core.models import SourceItem


@dataclass(frozen=True)
class NewItem:
    item: SourceItem
    sequence: int
    consumed: int = 1


@dataclass(frozen=True)
class EditedItem:
    item: SourceItem
    sequence: int
    consumed: int = 1


@dataclass(frozen=True)
class DeletedItems:
    item_ids: List[int]
    sequence: int
    consumed: int = 1


@dataclass(frozen=True)
class PinnedItems:
    """Full list of currently pinned item ids (not a delta)."""

    item_ids: List[int]
    sequence: int
    consumed: int = 1


@dataclass(frozen=True)
class Unsupported:
    """Notification shape the core does not handle; logged and ignored."""

    type_name: str
    sequence: int = 0
    consumed: int = 0


Notification = Union[NewItem, EditedItem, DeletedItems, PinnedItems, Unsupported]


@dataclass(frozen=True)
class NotificationBatch:
    """Live notifications delivered together; not guaranteed to be sorted."""

    notifications: List[Notification]


@dataclass(frozen=True)
class DifferencePage:
    """One page of a "changes since" backlog request."""

    items: List[SourceItem]
    new_sequence: int
    is_final: bool
    other: List[Notification] = field(default_factory=list)
