"""Importance rules: decide which posts deserve elevated visibility."""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Iterable, List, Optional


@dataclass(frozen=True)
class Rule:
    """Compiled importance rule."""

    name: str
    keywords: List[str]
    exclude_keywords: List[str]
    regex_patterns: List[re.Pattern]


@dataclass(frozen=True)
class RuleMatch:
    """A single rule match with a human-readable reason."""

    rule_name: str
    reason: str


def build_rules(rules_config: Iterable[dict]) -> List[Rule]:
    """Normalize rule configs and compile regex patterns.

    Keywords are lowercased once here; regexes are compiled case-insensitive
    and multiline so ``^`` anchors work per paragraph.
    """

    compiled: List[Rule] = []
    for rule in rules_config:
        if not rule.get("enabled", True):
            continue
        keywords = [k.lower() for k in rule.get("keywords", [])]
        exclude_keywords = [k.lower() for k in rule.get("exclude_keywords", [])]
        raw_regex = rule.get("regex", []) or []
        regex_patterns = [re.compile(pattern, re.IGNORECASE | re.MULTILINE) for pattern in raw_regex]
        compiled.append(
            Rule(
                name=rule["name"],
                keywords=keywords,
                exclude_keywords=exclude_keywords,
                regex_patterns=regex_patterns,
            )
        )
    return compiled


def match_rules(text: str, rules: Iterable[Rule]) -> List[RuleMatch]:
    """Return all rule matches for the given text.

    - If any exclude keyword is present, the rule does not match.
    - Otherwise, any keyword OR any regex match is sufficient.
    """

    lowered = text.lower()
    matches: List[RuleMatch] = []

    for rule in rules:
        if any(ex in lowered for ex in rule.exclude_keywords):
            continue

        keyword_hits = [k for k in rule.keywords if k in lowered]
        regex_hits = [pattern.pattern for pattern in rule.regex_patterns if pattern.search(text)]

        if not keyword_hits and not regex_hits:
            continue

        reason_parts: List[str] = []
        if keyword_hits:
            reason_parts.append(f"keyword(s): {', '.join(sorted(set(keyword_hits)))}")
        if regex_hits:
            reason_parts.append(f"regex: {', '.join(sorted(set(regex_hits)))}")
        matches.append(RuleMatch(rule_name=rule.name, reason="; ".join(reason_parts)))

    return matches


class ImportanceClassifier:
    """Headline-based classifier used for visibility escalation."""

    def __init__(self, rules: Iterable[Rule]) -> None:
        self._rules = list(rules)

    def classify(self, title: Optional[str], body: str) -> Optional[RuleMatch]:
        """Return the first matching rule for the headline, if any.

        The spoiler title is the headline; untitled posts are judged by body.
        """

        text = title if title else body
        if not text:
            return None
        matches = match_rules(text, self._rules)
        return matches[0] if matches else None
