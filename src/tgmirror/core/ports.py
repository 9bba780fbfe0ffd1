"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for storage, source and target adapters
so that the core can be reused with different backends.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Protocol

from tgmirror.core.models import (
    AttachmentRef,
    Capabilities,
    MappingEntry,
    SequenceCheckpoint,
    SourceItem,
    StatusContent,
    TargetPost,
    Visibility,
)
from tgmirror.core.notifications import DifferencePage, NotificationBatch


class CheckpointStore(Protocol):
    """Durable last-applied / next-expected sequence numbers."""

    def get_checkpoint(self) -> Optional[SequenceCheckpoint]:
        ...

    def save_checkpoint(self, checkpoint: SequenceCheckpoint) -> None:
        ...


class MappingStore(Protocol):
    """Dedup ledger mapping source item ids to target post ids."""

    def get_mapping(self, source_id: int) -> Optional[MappingEntry]:
        ...

    def find_by_target_ids(self, target_ids: Iterable[str]) -> List[MappingEntry]:
        ...

    def record_publish(self, entry: MappingEntry, checkpoint: SequenceCheckpoint) -> None:
        """Insert the mapping and save the checkpoint as one write."""
        ...

    def delete_mapping(self, source_id: int) -> None:
        ...


class Storage(CheckpointStore, MappingStore, Protocol):
    """Everything the delivery engine persists."""


class SourcePort(Protocol):
    """Source platform operations consumed by the core."""

    async def current_sequence(self) -> int:
        ...

    async def fetch_difference(self, since_sequence: int) -> DifferencePage:
        ...

    async def next_batch(self, timeout: float) -> Optional[NotificationBatch]:
        """Wait up to ``timeout`` seconds for live notifications."""
        ...

    async def export_link(self, item_id: int, grouped: bool = False) -> Optional[str]:
        ...

    async def pinned_item_ids(self) -> List[int]:
        ...

    async def download_attachment(self, item: SourceItem) -> Optional[bytes]:
        ...


class TargetPort(Protocol):
    """Target platform operations consumed by the core."""

    async def get_capabilities(self) -> Capabilities:
        ...

    async def get_account_id(self) -> str:
        ...

    async def publish(
        self,
        content: StatusContent,
        reply_to_id: Optional[str],
        attachments: List[AttachmentRef],
        visibility: Visibility,
        language: str,
        idempotency_key: Optional[str] = None,
    ) -> TargetPost:
        """Create a post; repeated calls with one ``idempotency_key`` may return the same post."""
        ...

    async def edit(
        self,
        target_id: str,
        content: StatusContent,
        attachment_ids: List[str],
        language: str,
    ) -> TargetPost:
        ...

    async def get(self, target_id: str) -> TargetPost:
        ...

    async def delete(self, target_id: str) -> None:
        """Delete a post; raises ``TargetNotFoundError`` if it is already gone."""
        ...

    async def pin(self, target_id: str) -> TargetPost:
        ...

    async def unpin(self, target_id: str) -> TargetPost:
        ...

    async def upload_attachment(
        self, data: bytes, filename: str, description: Optional[str] = None
    ) -> AttachmentRef:
        ...

    async def list_pinned(self, account_id: str) -> List[TargetPost]:
        ...


class ContentFormatter(Protocol):
    """Turns a source item into target content."""

    def format(self, item: SourceItem, link: str, capabilities: Capabilities) -> StatusContent:
        ...
