from __future__ import annotations

import pytest

from core.errors import RuleSetValidationError
from core.keyword_matcher import build_rule_set, contains_keyword, match_keywords
from core.models import MatchType


def test_keyword_matches_inside_longer_message() -> None:
    rules = build_rule_set({"keywords": ["yanachaga ecovillage"]})

    result = match_keywords("Hola! info del Yanachaga Ecovillage, gracias", rules)

    assert result is not None
    assert result.matched == "yanachaga ecovillage"
    assert result.match_type is MatchType.KEYWORD


def test_excluded_word_vetoes_everything() -> None:
    rules = build_rule_set(
        {
            "exact_matches": ["quiero info"],
            "keywords": ["yanachaga"],
            "synonyms": {"precio": ["costo"]},
            "excluded_words": ["spam"],
        }
    )

    assert match_keywords("quiero info de yanachaga, costo? SPAM", rules) is None


def test_exact_match_has_priority_over_keyword() -> None:
    rules = build_rule_set({"exact_matches": ["quiero info"], "keywords": ["info"]})

    result = match_keywords("Quiero INFO por favor", rules)

    assert result is not None
    assert result.match_type is MatchType.EXACT
    assert result.matched == "quiero info"


def test_synonym_reports_main_word() -> None:
    rules = build_rule_set({"synonyms": {"precio": ["costo", "tarifa"]}})

    result = match_keywords("¿Cuál es la tarifa?", rules)

    assert result is not None
    assert result.matched == "precio"
    assert result.match_type is MatchType.SYNONYM


def test_scattered_phrase_words_still_match() -> None:
    assert contains_keyword("info del proyecto yanachaga y ecovillage", "yanachaga ecovillage")
    assert not contains_keyword("info del proyecto yanachaga", "yanachaga ecovillage")
    assert not contains_keyword("anything", "")


def test_no_rule_matches() -> None:
    rules = build_rule_set({"keywords": ["lodge"], "synonyms": {"precio": ["costo"]}})

    assert match_keywords("hola buenas tardes", rules) is None
    assert match_keywords("", rules) is None
    assert match_keywords("lodge", None) is None


def test_empty_excluded_word_is_ignored() -> None:
    rules = build_rule_set({"keywords": ["lodge"], "excluded_words": ["", "?"]})

    assert match_keywords("info del lodge", rules) is not None


def test_build_rule_set_accepts_json_text() -> None:
    rules = build_rule_set('{"keywords": ["a"], "synonyms": {"b": ["c"]}}')

    assert rules.keywords == ("a",)
    assert rules.synonyms == (("b", ("c",)),)
    assert rules.exact_matches == ()


@pytest.mark.parametrize(
    "document",
    [
        "not json",
        ["keywords"],
        {"keywords": "yanachaga"},
        {"keywords": ["ok", 3]},
        {"synonyms": ["precio"]},
        {"synonyms": {"precio": "costo"}},
        {"triggers": ["x"]},
    ],
)
def test_build_rule_set_rejects_malformed_documents(document) -> None:
    with pytest.raises(RuleSetValidationError):
        build_rule_set(document)
