"""Source item -> target status formatting.

The first paragraph becomes the spoiler title (the headline), the rest is the
body, and a backlink to the source item always closes the post. Long posts
are cut paragraph by paragraph, then at a sentence boundary.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional

from tgmirror.core.models import Capabilities, PollInfo, PollLimits, PollSpec, SourceItem, StatusContent

LOGGER = logging.getLogger(__name__)

LINK_PREFIX = "🔗 "
TRIMMED_LINK_PREFIX = "[…] 🔗 "
SENTENCE_END = ".!?"
DEFAULT_POLL_DURATION = 24 * 60 * 60


def _joined_length(paragraphs: List[str]) -> int:
    if not paragraphs:
        return 0
    return sum(len(p) for p in paragraphs) + (len(paragraphs) - 1) * 2


def strip_junk(text: str, junk_patterns: Iterable[re.Pattern]) -> str:
    """Remove every junk match (boilerplate disclaimers and the like)."""

    for pattern in junk_patterns:
        text = pattern.sub("", text)
    return text


def split_paragraphs(text: str) -> List[str]:
    return [line.strip() for line in text.split("\n") if line.strip()]


def drop_repeated_url(paragraphs: List[str]) -> List[str]:
    """Drop a URL paragraph immediately followed by its own shortened copy."""

    result = list(paragraphs)
    for i in range(len(result) - 1, 1, -1):
        previous, current = result[i - 1], result[i]
        if previous.startswith("http") and previous.startswith(current) and len(current) > 10:
            del result[i - 1]
            break
    return result


def cut_sentence(paragraph: str, limit: int) -> str:
    """Cut ``paragraph`` to at most ``limit`` chars, preferring a sentence end."""

    if len(paragraph) <= limit:
        return paragraph
    head = paragraph[:limit]
    idx = max(head.rfind(ch) for ch in SENTENCE_END)
    if idx > 0:
        return head[: idx + 1]
    return head.rstrip()


def reduce_paragraphs(paragraphs: List[str], link: str, capabilities: Capabilities) -> List[str]:
    """Fit paragraphs plus the backlink into the target's status length."""

    paragraphs = drop_repeated_url(paragraphs)
    limit = capabilities.max_content_length - capabilities.per_url_reserved_chars - len(link) - len(LINK_PREFIX) - 2
    if _joined_length(paragraphs) < limit:
        return paragraphs + [f"{LINK_PREFIX}{link}"]

    limit -= len(TRIMMED_LINK_PREFIX) - len(LINK_PREFIX)
    while _joined_length(paragraphs) > limit and len(paragraphs) > 1:
        paragraphs.pop()
    if paragraphs and _joined_length(paragraphs) > limit:
        paragraphs[0] = cut_sentence(paragraphs[0], limit)
    return paragraphs + [f"{TRIMMED_LINK_PREFIX}{link}"]


def build_poll(poll: Optional[PollInfo], limits: Optional[PollLimits]) -> Optional[PollSpec]:
    """Return a target poll when the source poll fits the target limits."""

    if poll is None or limits is None:
        return None
    if len(poll.options) > limits.max_options:
        LOGGER.info("Poll has %s options, target allows %s; dropping it", len(poll.options), limits.max_options)
        return None
    if any(len(option) > limits.max_option_length for option in poll.options):
        LOGGER.info("Poll option longer than %s chars; dropping poll", limits.max_option_length)
        return None
    duration = poll.duration_seconds or DEFAULT_POLL_DURATION
    duration = min(max(duration, limits.min_duration), limits.max_duration)
    return PollSpec(options=list(poll.options), expires_in=duration, multiple=poll.multiple)


class StatusFormatter:
    """Default ``ContentFormatter`` used by the app."""

    def __init__(self, junk_patterns: Iterable[str] = ()) -> None:
        self._junk = [re.compile(p, re.IGNORECASE | re.MULTILINE) for p in junk_patterns]

    def format(self, item: SourceItem, link: str, capabilities: Capabilities) -> StatusContent:
        text = strip_junk(item.text or "", self._junk)
        if not text.strip() and item.poll is not None:
            text = item.poll.question
        if item.webpage_url:
            text += f"\n\n{item.webpage_url}"

        paragraphs = reduce_paragraphs(split_paragraphs(text), link, capabilities)
        poll = build_poll(item.poll, capabilities.poll_limits)
        if len(paragraphs) > 1:
            return StatusContent(title=paragraphs[0], body="\n\n".join(paragraphs[1:]), poll=poll)
        return StatusContent(body=paragraphs[0], poll=poll)
