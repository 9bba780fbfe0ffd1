from __future__ import annotations

from tgmirror.core.rules_engine import ImportanceClassifier, build_rules, match_rules


def test_disabled_rules_are_not_compiled() -> None:
    rules = build_rules(
        [
            {"name": "on", "keywords": ["a"]},
            {"name": "off", "keywords": ["b"], "enabled": False},
        ]
    )
    assert [rule.name for rule in rules] == ["on"]


def test_keyword_regex_and_exclusions() -> None:
    rules = build_rules(
        [
            {"name": "breaking", "keywords": ["Срочно"], "exclude_keywords": ["реклама"]},
            {"name": "flash", "regex": [r"^⚡"]},
        ]
    )

    matches = match_rules("⚡ СРОЧНО: новости", rules)
    assert [m.rule_name for m in matches] == ["breaking", "flash"]
    assert matches[0].reason == "keyword(s): срочно"

    assert [m.rule_name for m in match_rules("Срочно! Реклама", rules)] == []


def test_classifier_judges_headline_before_body() -> None:
    classifier = ImportanceClassifier(build_rules([{"name": "breaking", "keywords": ["срочно"]}]))

    assert classifier.classify("Срочно: заголовок", "тело") is not None
    # A titled post is judged by its title only.
    assert classifier.classify("Заголовок", "срочно в теле") is None
    assert classifier.classify(None, "Срочно в теле") is not None
    assert classifier.classify(None, "") is None
