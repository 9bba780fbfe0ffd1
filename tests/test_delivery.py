from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Iterable, Optional

import pytest

from tgmirror.core.assembler import GroupAssembler
from tgmirror.core.attachments import AttachmentCollector
from tgmirror.core.bus import EventBus
from tgmirror.core.config import AssemblerConfig, DeliveryConfig, RateLimitConfig
from tgmirror.core.delivery import DeliveryEngine
from tgmirror.core.errors import AttachmentsProcessingError, TargetError, TargetNotFoundError
from tgmirror.core.models import (
    AttachmentRef,
    Capabilities,
    Event,
    EventKind,
    MappingEntry,
    MediaInfo,
    MediaKind,
    MessageGroup,
    SequenceCheckpoint,
    SourceItem,
    StatusContent,
    TargetPost,
    Visibility,
)
from tgmirror.core.notifications import DifferencePage
from tgmirror.core.rate_limiter import SlidingWindowLimiter
from tgmirror.core.rules_engine import ImportanceClassifier, build_rules


class FakeStorage:
    def __init__(self, checkpoint: Optional[SequenceCheckpoint] = None) -> None:
        self.checkpoint = checkpoint
        self.mappings: dict[int, MappingEntry] = {}

    def map(self, source_id: int, target_id: str) -> None:
        self.mappings[source_id] = MappingEntry(source_id, target_id)

    def get_checkpoint(self) -> Optional[SequenceCheckpoint]:
        return self.checkpoint

    def save_checkpoint(self, checkpoint: SequenceCheckpoint) -> None:
        self.checkpoint = checkpoint

    def get_mapping(self, source_id: int) -> Optional[MappingEntry]:
        return self.mappings.get(source_id)

    def find_by_target_ids(self, target_ids: Iterable[str]) -> list[MappingEntry]:
        wanted = set(target_ids)
        return [entry for entry in self.mappings.values() if entry.target_id in wanted]

    def record_publish(self, entry: MappingEntry, checkpoint: SequenceCheckpoint) -> None:
        self.mappings[entry.source_id] = entry
        self.checkpoint = checkpoint

    def delete_mapping(self, source_id: int) -> None:
        self.mappings.pop(source_id, None)


class FakeTarget:
    def __init__(self) -> None:
        self.capabilities = Capabilities(
            max_content_length=500,
            max_attachments=4,
            per_url_reserved_chars=23,
            max_attachment_bytes_by_kind={"image": 1000, "video": 10000},
            supported_mime_types=frozenset({"image/jpeg", "video/mp4"}),
        )
        self.posts: dict[str, TargetPost] = {}
        self.published: list[dict] = []
        self.publish_errors: list[Exception] = []
        self.edited: list[tuple[str, StatusContent, list[str]]] = []
        self.get_errors: dict[str, Exception] = {}
        self.deleted: list[str] = []
        self.delete_errors: dict[str, Exception] = {}
        self.pin_calls: list[str] = []
        self.unpin_calls: list[str] = []
        self.pin_errors: dict[str, Exception] = {}
        self.pinned_on_target: list[TargetPost] = []
        self._ids = itertools.count(1)

    def add_post(self, target_id: str, text: str = "", attachment_ids: Optional[list[str]] = None) -> TargetPost:
        post = TargetPost(
            id=target_id,
            url=f"https://m.example/@mirror/{target_id}",
            text=text,
            attachment_ids=list(attachment_ids or []),
        )
        self.posts[target_id] = post
        return post

    async def get_capabilities(self) -> Capabilities:
        return self.capabilities

    async def get_account_id(self) -> str:
        return "acc"

    async def publish(
        self,
        content: StatusContent,
        reply_to_id: Optional[str],
        attachments: list[AttachmentRef],
        visibility: Visibility,
        language: str,
        idempotency_key: Optional[str] = None,
    ) -> TargetPost:
        self.published.append(
            {
                "content": content,
                "reply_to_id": reply_to_id,
                "attachments": list(attachments),
                "visibility": visibility,
                "idempotency_key": idempotency_key,
            }
        )
        if self.publish_errors:
            raise self.publish_errors.pop(0)
        post = self.add_post(f"t{next(self._ids)}", content.body)
        return TargetPost(id=post.id, url=post.url, visibility=visibility.value, text=post.text)

    async def edit(
        self, target_id: str, content: StatusContent, attachment_ids: list[str], language: str
    ) -> TargetPost:
        self.edited.append((target_id, content, list(attachment_ids)))
        return self.add_post(target_id, content.body, attachment_ids)

    async def get(self, target_id: str) -> TargetPost:
        if target_id in self.get_errors:
            raise self.get_errors[target_id]
        return self.posts[target_id]

    async def delete(self, target_id: str) -> None:
        if target_id in self.delete_errors:
            raise self.delete_errors[target_id]
        self.deleted.append(target_id)

    async def pin(self, target_id: str) -> TargetPost:
        if target_id in self.pin_errors:
            raise self.pin_errors[target_id]
        self.pin_calls.append(target_id)
        return self.posts.get(target_id) or self.add_post(target_id)

    async def unpin(self, target_id: str) -> TargetPost:
        self.unpin_calls.append(target_id)
        return self.posts.get(target_id) or self.add_post(target_id)

    async def upload_attachment(
        self, data: bytes, filename: str, description: Optional[str] = None
    ) -> AttachmentRef:
        return AttachmentRef(id=f"m-{filename}", kind="image")

    async def list_pinned(self, account_id: str) -> list[TargetPost]:
        return list(self.pinned_on_target)


class FakeSource:
    async def download_attachment(self, item: SourceItem) -> Optional[bytes]:
        return b"jpeg"


class BacklogSource(FakeSource):
    def __init__(self, pages: dict[int, DifferencePage]) -> None:
        self.pages = pages
        self.requested: list[int] = []

    async def fetch_difference(self, since_sequence: int) -> DifferencePage:
        self.requested.append(since_sequence)
        return self.pages[since_sequence]

    async def export_link(self, item_id: int, grouped: bool = False) -> Optional[str]:
        return f"https://t.me/chan/{item_id}"


class FakeFormatter:
    def format(self, item: SourceItem, link: str, capabilities: Capabilities) -> StatusContent:
        return StatusContent(body=item.text)


def _engine(
    target: FakeTarget,
    storage: FakeStorage,
    *,
    capacity: int = 3,
    rules: Optional[list[dict]] = None,
    retry_cooldown: float = 0.01,
) -> DeliveryEngine:
    return DeliveryEngine(
        target=target,
        storage=storage,
        formatter=FakeFormatter(),
        collector=AttachmentCollector(FakeSource(), target, 1500),
        classifier=ImportanceClassifier(build_rules(rules or [])),
        limiter=SlidingWindowLimiter(RateLimitConfig(window=3600, capacity=capacity)),
        config=DeliveryConfig(
            channel="chan",
            retry_cooldown=retry_cooldown,
            attachment_retry_attempts=2,
            attachment_retry_delay=0,
        ),
    )


def _post(item: SourceItem, sequence: int) -> Event:
    return Event(EventKind.POST, MessageGroup.single(item), sequence)


def test_post_is_published_once_and_recorded() -> None:
    target = FakeTarget()
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    engine = _engine(target, storage)
    event = _post(SourceItem(id=11, text="hello"), 11)

    async def scenario() -> None:
        assert await engine.deliver(event)
        assert await engine.deliver(event)

    asyncio.run(scenario())

    assert len(target.published) == 1
    assert target.published[0]["idempotency_key"] == "tgmirror-11"
    assert target.published[0]["visibility"] is Visibility.UNLISTED
    assert storage.mappings == {11: MappingEntry(11, "t1", 11)}
    assert storage.checkpoint == SequenceCheckpoint(applied=11, expected_next=12)


def test_reply_targets_mapped_post_only() -> None:
    target = FakeTarget()
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    storage.map(5, "t-old")
    engine = _engine(target, storage)

    async def scenario() -> None:
        await engine.apply(_post(SourceItem(id=11, reply_to_id=5, text="reply"), 11))
        await engine.apply(_post(SourceItem(id=12, reply_to_id=6, text="orphan"), 12))

    asyncio.run(scenario())

    assert [p["reply_to_id"] for p in target.published] == ["t-old", None]


def test_grouped_media_only_single_item_is_skipped() -> None:
    target = FakeTarget()
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    engine = _engine(target, storage)

    asyncio.run(engine.apply(_post(SourceItem(id=11, group_id=5), 11)))

    assert target.published == []
    assert storage.mappings == {}
    assert storage.checkpoint.applied == 11


def test_attachments_are_dropped_after_processing_retries() -> None:
    target = FakeTarget()
    target.publish_errors = [AttachmentsProcessingError("still processing", 422) for _ in range(3)]
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    engine = _engine(target, storage)
    media = MediaInfo(kind=MediaKind.IMAGE, mime_type="image/jpeg", size=10, filename="a.jpg")

    asyncio.run(engine.apply(_post(SourceItem(id=11, text="photo", media=media), 11)))

    assert len(target.published) == 4
    assert [len(p["attachments"]) for p in target.published] == [1, 1, 1, 0]
    assert 11 in storage.mappings


def test_processing_error_without_attachments_propagates() -> None:
    target = FakeTarget()
    target.publish_errors = [AttachmentsProcessingError("still processing", 422)]
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    engine = _engine(target, storage)

    with pytest.raises(AttachmentsProcessingError):
        asyncio.run(engine.apply(_post(SourceItem(id=11, text="text"), 11)))
    assert storage.mappings == {}


def test_important_posts_are_escalated_within_rate_limit() -> None:
    target = FakeTarget()
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    engine = _engine(
        target, storage, capacity=1, rules=[{"name": "breaking", "keywords": ["срочно"]}]
    )

    async def scenario() -> None:
        await engine.apply(_post(SourceItem(id=11, text="Срочно: первая новость"), 11))
        await engine.apply(_post(SourceItem(id=12, text="Обычная новость"), 12))
        await engine.apply(_post(SourceItem(id=13, text="СРОЧНО: вторая новость"), 13))

    asyncio.run(scenario())

    assert [p["visibility"] for p in target.published] == [
        Visibility.PUBLIC,
        Visibility.UNLISTED,
        Visibility.UNLISTED,
    ]


def test_edit_without_visible_change_is_a_noop() -> None:
    target = FakeTarget()
    target.add_post("t1", "hello", ["m9"])
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    storage.map(11, "t1")
    engine = _engine(target, storage)

    async def scenario() -> None:
        await engine.apply(Event(EventKind.EDIT, MessageGroup.single(SourceItem(id=11, text="hello")), 11))
        assert target.edited == []
        await engine.apply(Event(EventKind.EDIT, MessageGroup.single(SourceItem(id=11, text="hello!")), 12))

    asyncio.run(scenario())

    assert len(target.edited) == 1
    target_id, content, attachment_ids = target.edited[0]
    assert target_id == "t1"
    assert content.body == "hello!"
    assert attachment_ids == ["m9"]
    assert storage.checkpoint.applied == 12


def test_edit_failures_are_per_item() -> None:
    target = FakeTarget()
    target.add_post("t1", "old")
    target.add_post("t2", "old")
    target.get_errors["t1"] = TargetError("boom", 500)
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    storage.map(1, "t1")
    storage.map(2, "t2")
    engine = _engine(target, storage)
    group = MessageGroup.of([SourceItem(id=1, text="new"), SourceItem(id=2, text="new")])

    asyncio.run(engine.apply(Event(EventKind.EDIT, group, 11)))

    assert [edit[0] for edit in target.edited] == ["t2"]
    assert storage.checkpoint.applied == 11


def test_delete_tolerates_missing_target_post() -> None:
    target = FakeTarget()
    target.delete_errors["t1"] = TargetNotFoundError("gone", 404)
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    storage.map(1, "t1")
    storage.map(2, "t2")
    engine = _engine(target, storage)

    asyncio.run(engine.apply(Event(EventKind.DELETE, MessageGroup.of_ids([1, 2, 3]), 11)))

    assert target.deleted == ["t2"]
    assert storage.mappings == {}
    assert storage.checkpoint.applied == 11


def test_delete_hard_error_propagates_and_keeps_state() -> None:
    target = FakeTarget()
    target.delete_errors["t1"] = TargetError("server error", 500)
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    storage.map(1, "t1")
    engine = _engine(target, storage)

    with pytest.raises(TargetError):
        asyncio.run(engine.apply(Event(EventKind.DELETE, MessageGroup.of_ids([1]), 11)))
    assert 1 in storage.mappings
    assert storage.checkpoint.applied == 10


def test_pin_set_is_reconciled_by_difference() -> None:
    target = FakeTarget()
    target.pinned_on_target = [target.add_post("t1"), target.add_post("t2")]
    target.add_post("t3")
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    storage.map(1, "t1")
    storage.map(2, "t2")
    storage.map(3, "t3")
    engine = _engine(target, storage)

    async def scenario() -> None:
        await engine.start()
        assert set(engine.pins) == {1, 2}
        await engine.apply(Event(EventKind.PIN, MessageGroup.of_ids([2, 3, 4]), 11))

    asyncio.run(scenario())

    assert target.unpin_calls == ["t1"]
    assert target.pin_calls == ["t3"]
    assert set(engine.pins) == {2, 3}
    assert storage.checkpoint.applied == 11


def test_failed_pin_is_not_recorded() -> None:
    target = FakeTarget()
    target.add_post("t1")
    target.pin_errors["t1"] = TargetError("too many pins", 422)
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    storage.map(1, "t1")
    engine = _engine(target, storage)

    asyncio.run(engine.apply(Event(EventKind.PIN, MessageGroup.of_ids([1]), 11)))

    assert engine.pins == {}
    assert storage.checkpoint.applied == 11


def test_deleted_item_leaves_pin_set() -> None:
    target = FakeTarget()
    target.pinned_on_target = [target.add_post("t1")]
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    storage.map(1, "t1")
    engine = _engine(target, storage)

    async def scenario() -> None:
        await engine.start()
        await engine.apply(Event(EventKind.DELETE, MessageGroup.of_ids([1]), 11))

    asyncio.run(scenario())

    assert engine.pins == {}


def test_checkpoint_never_moves_backwards() -> None:
    target = FakeTarget()
    storage = FakeStorage(SequenceCheckpoint(applied=20, expected_next=21))
    engine = _engine(target, storage)

    asyncio.run(engine.apply(_post(SourceItem(id=7, text="late"), 15)))

    assert 7 in storage.mappings
    assert storage.checkpoint == SequenceCheckpoint(applied=20, expected_next=21)


def test_failed_event_is_retried_until_it_succeeds() -> None:
    target = FakeTarget()
    target.publish_errors = [TargetError("unavailable", 503), TargetError("unavailable", 503)]
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    engine = _engine(target, storage)

    assert asyncio.run(engine.deliver(_post(SourceItem(id=11, text="hello"), 11)))
    assert len(target.published) == 3
    assert storage.checkpoint.applied == 11


def test_run_stops_during_cooldown() -> None:
    target = FakeTarget()
    target.publish_errors = [TargetError("unavailable", 503) for _ in range(100)]
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    engine = _engine(target, storage, retry_cooldown=30)

    async def scenario() -> None:
        bus = EventBus()
        subscription = bus.subscribe("delivery")
        stop = asyncio.Event()
        bus.publish(_post(SourceItem(id=11, text="hello"), 11))
        asyncio.get_running_loop().call_later(0.05, stop.set)
        await asyncio.wait_for(engine.run(subscription, stop), 5)

    asyncio.run(scenario())

    assert len(target.published) == 1
    assert storage.mappings == {}
    assert storage.checkpoint.applied == 10


def test_run_drains_events_until_bus_completes() -> None:
    target = FakeTarget()
    storage = FakeStorage(SequenceCheckpoint(applied=10))
    engine = _engine(target, storage)

    async def scenario() -> None:
        bus = EventBus()
        subscription = bus.subscribe("delivery")
        bus.publish(_post(SourceItem(id=11, text="one"), 11))
        bus.publish(_post(SourceItem(id=12, text="two"), 12))
        bus.complete()
        await asyncio.wait_for(engine.run(subscription, asyncio.Event()), 5)

    asyncio.run(scenario())

    assert [p["content"].body for p in target.published] == ["one", "two"]
    assert storage.checkpoint.applied == 12


def _replay_backlog(storage: FakeStorage) -> list[Event]:
    pages = {
        100: DifferencePage(
            items=[SourceItem(id=i, text=f"item {i}") for i in range(1, 6)], new_sequence=105, is_final=False
        ),
        105: DifferencePage(
            items=[SourceItem(id=i, text=f"item {i}") for i in range(6, 11)], new_sequence=110, is_final=True
        ),
    }
    events: list[Event] = []
    assembler = GroupAssembler(BacklogSource(pages), storage, events.append, AssemblerConfig())
    asyncio.run(assembler.catch_up())
    return events


def _apply_all(engine: DeliveryEngine, events: list[Event], storage: FakeStorage) -> list[int]:
    async def scenario() -> list[int]:
        applied = []
        for event in events:
            await engine.apply(event)
            applied.append(storage.checkpoint.applied)
        return applied

    return asyncio.run(scenario())


def test_backlog_checkpoint_reaches_page_sequence_only_after_its_last_event() -> None:
    target = FakeTarget()
    storage = FakeStorage(SequenceCheckpoint(applied=100))
    events = _replay_backlog(storage)

    applied = _apply_all(_engine(target, storage), events, storage)

    assert applied == [100, 100, 100, 100, 105, 105, 105, 105, 105, 110]
    assert [p["content"].body for p in target.published] == [f"item {i}" for i in range(1, 11)]
    assert storage.checkpoint == SequenceCheckpoint(applied=110, expected_next=111)


def test_backlog_interrupted_mid_page_is_resumed_without_losing_items() -> None:
    target = FakeTarget()
    storage = FakeStorage(SequenceCheckpoint(applied=100))

    applied = _apply_all(_engine(target, storage), _replay_backlog(storage)[:3], storage)
    assert applied == [100, 100, 100]

    # Restart: the backlog is fetched again from the stored checkpoint.
    _apply_all(_engine(target, storage), _replay_backlog(storage), storage)

    assert sorted(storage.mappings) == list(range(1, 11))
    assert len(target.published) == 10
    assert storage.checkpoint.applied == 110


def test_startup_pin_sync_is_not_reported_as_a_sequence_gap(caplog: pytest.LogCaptureFixture) -> None:
    target = FakeTarget()
    target.add_post("t1")
    storage = FakeStorage(SequenceCheckpoint(applied=110, expected_next=111))
    storage.map(1, "t1")
    engine = _engine(target, storage)

    with caplog.at_level(logging.WARNING, logger="tgmirror.core.delivery"):
        asyncio.run(engine.apply(Event(EventKind.PIN, MessageGroup.of_ids([1]), 110, expected_increment=0)))
    assert target.pin_calls == ["t1"]
    assert storage.checkpoint == SequenceCheckpoint(applied=110, expected_next=111)
    assert not [r for r in caplog.records if "Unexpected sequence" in r.getMessage()]

    with caplog.at_level(logging.WARNING, logger="tgmirror.core.delivery"):
        asyncio.run(engine.apply(_post(SourceItem(id=20, text="after a gap"), 115)))
    assert [r for r in caplog.records if "Unexpected sequence" in r.getMessage()]
    assert storage.checkpoint == SequenceCheckpoint(applied=115, expected_next=116)
