"""Rule-set parsing and keyword matching logic (core domain)."""

from __future__ import annotations

import json
import logging
from typing import Any, List, Mapping, Optional, Tuple

from core.errors import RuleSetValidationError
from core.models import KeywordRuleSet, MatchResult, MatchType
from core.text import normalize_text

LOGGER = logging.getLogger(__name__)

_RULE_KEYS = ("exact_matches", "keywords", "synonyms", "excluded_words")


def _string_list(document: Mapping[str, Any], key: str) -> Tuple[str, ...]:
    value = document.get(key)
    if value is None:
        return ()
    if not isinstance(value, list):
        raise RuleSetValidationError(f"'{key}' must be a list, got {type(value).__name__}")
    for entry in value:
        if not isinstance(entry, str):
            raise RuleSetValidationError(f"'{key}' entries must be strings, got {entry!r}")
    return tuple(value)


def build_rule_set(document: Any) -> KeywordRuleSet:
    """Validate a stored rule-set document and return a typed rule set.

    Accepts the decoded mapping or its JSON text. Anything other than the four
    known keys, or values of the wrong shape, raises RuleSetValidationError so
    malformed campaigns fail here instead of inside matching.
    """

    if isinstance(document, (str, bytes)):
        try:
            document = json.loads(document)
        except ValueError as exc:
            raise RuleSetValidationError(f"Rule set is not valid JSON: {exc}") from exc

    if not isinstance(document, Mapping):
        raise RuleSetValidationError(f"Rule set must be an object, got {type(document).__name__}")

    unknown = sorted(set(document) - set(_RULE_KEYS))
    if unknown:
        raise RuleSetValidationError(f"Unknown rule set keys: {', '.join(map(str, unknown))}")

    raw_synonyms = document.get("synonyms") or {}
    if not isinstance(raw_synonyms, Mapping):
        raise RuleSetValidationError("'synonyms' must be an object of word -> list")

    synonyms: List[Tuple[str, Tuple[str, ...]]] = []
    for main_word, alternatives in raw_synonyms.items():
        if not isinstance(main_word, str):
            raise RuleSetValidationError(f"Synonym keys must be strings, got {main_word!r}")
        synonyms.append((main_word, _string_list({main_word: alternatives}, main_word)))

    return KeywordRuleSet(
        exact_matches=_string_list(document, "exact_matches"),
        keywords=_string_list(document, "keywords"),
        synonyms=tuple(synonyms),
        excluded_words=_string_list(document, "excluded_words"),
    )


def contains_keyword(normalized_message: str, normalized_phrase: str) -> bool:
    """Return True if the phrase is in the message.

    The phrase matches as a contiguous substring, or when every one of its
    words appears somewhere in the message ("info del proyecto yanachaga y
    ecovillage" still matches "yanachaga ecovillage").
    """

    phrase_words = normalized_phrase.split()
    if not phrase_words:
        return False

    if normalized_phrase in normalized_message:
        return True

    message_words = set(normalized_message.split())
    return all(word in message_words for word in phrase_words)


def _substring_hit(normalized_message: str, word: str) -> bool:
    normalized = normalize_text(word)
    return bool(normalized) and normalized in normalized_message


def match_keywords(message_text: Optional[str], rule_set: Optional[KeywordRuleSet]) -> Optional[MatchResult]:
    """Return the first rule of ``rule_set`` satisfied by the message.

    Matching order:
    - Any excluded word vetoes the message outright.
    - Exact phrases, then keywords, both via ``contains_keyword``.
    - Synonym groups: the main word, then each synonym, by substring. The
      reported match is always the main word.
    """

    if not message_text or rule_set is None:
        return None

    normalized_message = normalize_text(message_text)
    LOGGER.debug("Normalized message: %r", normalized_message)

    for word in rule_set.excluded_words:
        if _substring_hit(normalized_message, word):
            LOGGER.debug("Excluded word present: %r", word)
            return None

    for phrase in rule_set.exact_matches:
        if contains_keyword(normalized_message, normalize_text(phrase)):
            LOGGER.info("Exact match: %r", phrase)
            return MatchResult(matched=phrase, match_type=MatchType.EXACT)

    for keyword in rule_set.keywords:
        if contains_keyword(normalized_message, normalize_text(keyword)):
            LOGGER.info("Keyword match: %r", keyword)
            return MatchResult(matched=keyword, match_type=MatchType.KEYWORD)

    for main_word, alternatives in rule_set.synonyms:
        if _substring_hit(normalized_message, main_word):
            LOGGER.info("Synonym match (main word): %r", main_word)
            return MatchResult(matched=main_word, match_type=MatchType.SYNONYM)
        for synonym in alternatives:
            if _substring_hit(normalized_message, synonym):
                LOGGER.info("Synonym match: %r -> %r", synonym, main_word)
                return MatchResult(matched=main_word, match_type=MatchType.SYNONYM)

    LOGGER.debug("No rule matched")
    return None
