"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to Telethon or Mastodon types. Integration payloads travel in the
opaque ``raw`` fields and are only ever touched by the adapter that made them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional


class MediaKind(str, Enum):
    """Kind of media attached to a source item."""

    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"


@dataclass(frozen=True)
class MediaInfo:
    """Attachment metadata known before downloading the payload."""

    kind: MediaKind
    mime_type: Optional[str]
    size: Optional[int]
    filename: str
    description: Optional[str] = None
    from_webpage: bool = False


@dataclass(frozen=True)
class PollInfo:
    """Poll carried by a source item."""

    question: str
    options: List[str]
    multiple: bool = False
    duration_seconds: Optional[int] = None


@dataclass(frozen=True)
class SourceItem:
    """Single item of the source feed (one channel message)."""

    id: int
    group_id: Optional[int] = None
    reply_to_id: Optional[int] = None
    text: str = ""
    webpage_url: Optional[str] = None
    media: Optional[MediaInfo] = None
    poll: Optional[PollInfo] = None
    raw: Any = field(default=None, compare=False, repr=False)

    @property
    def is_grouped(self) -> bool:
        return bool(self.group_id)

    @property
    def is_media_only(self) -> bool:
        return not self.text.strip()


@dataclass(frozen=True)
class MessageGroup:
    """Items published together; ``id == 0`` means ungrouped."""

    id: int
    expected_count: int
    items: List[SourceItem]

    def __post_init__(self) -> None:
        if len(self.items) > self.expected_count:
            raise ValueError(
                f"Group {self.id} holds {len(self.items)} items, expected at most {self.expected_count}"
            )

    @classmethod
    def single(cls, item: SourceItem) -> "MessageGroup":
        return cls(id=0, expected_count=1, items=[item])

    @classmethod
    def of(cls, items: List[SourceItem], group_id: int = 0) -> "MessageGroup":
        return cls(id=group_id, expected_count=len(items), items=list(items))

    @classmethod
    def of_ids(cls, item_ids: List[int]) -> "MessageGroup":
        """Build a group of id-only items (deletes and pins carry no content)."""

        return cls.of([SourceItem(id=item_id) for item_id in item_ids])

    @property
    def primary(self) -> SourceItem:
        """First captioned item (albums carry one caption), else the first item."""

        for item in self.items:
            if not item.is_media_only:
                return item
        return self.items[0]

    @property
    def is_complete(self) -> bool:
        return len(self.items) == self.expected_count


class EventKind(str, Enum):
    POST = "post"
    EDIT = "edit"
    DELETE = "delete"
    PIN = "pin"


@dataclass(frozen=True)
class Event:
    """Application-level event emitted by the group assembler.

    ``sequence`` is the source sequence number once the event is applied and
    ``expected_increment`` is how far the next expected sequence moves.
    """

    kind: EventKind
    group: MessageGroup
    sequence: int
    expected_increment: int = 1
    link: Optional[str] = None


@dataclass(frozen=True)
class SequenceCheckpoint:
    """Last applied and next expected source sequence numbers."""

    applied: int
    expected_next: Optional[int] = None


@dataclass(frozen=True)
class MappingEntry:
    """Dedup ledger row: one target post per published source item."""

    source_id: int
    target_id: str
    sequence_at_creation: Optional[int] = None


class Visibility(str, Enum):
    PUBLIC = "public"
    UNLISTED = "unlisted"
    PRIVATE = "private"
    DIRECT = "direct"


@dataclass(frozen=True)
class PollLimits:
    min_duration: int
    max_duration: int
    max_options: int
    max_option_length: int


@dataclass(frozen=True)
class Capabilities:
    """Limits advertised by the target instance."""

    max_content_length: int
    max_attachments: int
    per_url_reserved_chars: int
    max_attachment_bytes_by_kind: dict[str, int]
    supported_mime_types: frozenset[str]
    poll_limits: Optional[PollLimits] = None

    def max_bytes_for(self, kind: str) -> int:
        if kind in self.max_attachment_bytes_by_kind:
            return self.max_attachment_bytes_by_kind[kind]
        return max(self.max_attachment_bytes_by_kind.values(), default=0)


@dataclass(frozen=True)
class AttachmentRef:
    """Uploaded target attachment."""

    id: str
    kind: str


@dataclass(frozen=True)
class PollSpec:
    options: List[str]
    expires_in: int
    multiple: bool = False


@dataclass(frozen=True)
class StatusContent:
    """Formatted content ready for publishing: optional spoiler title + body."""

    body: str
    title: Optional[str] = None
    poll: Optional[PollSpec] = None


@dataclass(frozen=True)
class TargetPost:
    """Target-side post as returned by the target collaborator."""

    id: str
    url: Optional[str]
    visibility: Optional[str] = None
    text: Optional[str] = None
    spoiler_text: Optional[str] = None
    attachment_ids: List[str] = field(default_factory=list)
