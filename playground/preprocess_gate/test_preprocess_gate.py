# playground/preprocess_gate/test_preprocess_gate.py

"""
[职责] preprocess gate：验证规范化幂等、ID 提取、缩写展开、同义变体上限与预处理永不抛错。
[边界] 纯函数测试；不访问 DB；不调用外部协作方。
[上游关系] 依赖 pipelines/preprocess/*。
[下游关系] 保障 lexical/semantic 始终拿到可用查询。
"""

from __future__ import annotations

import pytest

from qa_rag.backend.pipelines.preprocess import pipeline as pipeline_mod
from qa_rag.backend.pipelines.preprocess.abbreviation import expand_abbreviations
from qa_rag.backend.pipelines.preprocess.dictionaries import merge_dictionary
from qa_rag.backend.pipelines.preprocess.normalizer import extract_identifiers, normalize_query, normalize_text
from qa_rag.backend.pipelines.preprocess.pipeline import preprocess_query
from qa_rag.backend.pipelines.preprocess.synonym import expand_synonyms
from qa_rag.backend.schemas.query import PreprocessConfig


pytestmark = pytest.mark.preprocess_gate

PAYMENT_QUERY = "What are the negative test cases for payment timeout?"


@pytest.mark.parametrize(
    "raw",
    [
        PAYMENT_QUERY,
        "  Find TC-001 & TC-002!!  ",
        "UAT/SIT -- e2e   flow?",
        "résumé upload: ÜBER test",
        "___",
        "",
    ],
)
def test_normalize_text_is_idempotent(raw: str) -> None:
    once = normalize_text(raw)
    assert normalize_text(once) == once


def test_normalize_text_strips_specials_and_lowercases() -> None:
    assert normalize_text("  What's the TC-001 status?? ") == "what s the tc-001 status"
    assert normalize_text(None) == ""  # type: ignore[arg-type]
    assert normalize_text(42) == ""  # type: ignore[arg-type]


def test_extract_identifiers_dedupes_in_first_seen_order() -> None:
    ids = extract_identifiers("see tc-12, BUG-7 and TC-12 again, plus JIRA-99")
    assert ids == ["TC-12", "BUG-7", "JIRA-99"]


def test_normalize_query_reports_counts() -> None:
    res = normalize_query("Check US-4 now!")
    assert res.normalized == "check us-4 now"
    assert res.identifiers == ["US-4"]
    assert res.error is None
    assert res.metadata["identifiers"] == 1


def test_abbreviations_expand_whole_words_and_record_replacements() -> None:
    res = expand_abbreviations("uat plan for api db")
    assert res.expanded == "user acceptance testing plan for application programming interface database"
    assert [r.from_ for r in res.replacements] == ["uat", "api", "db"]  # docstring: 词典迭代顺序
    # "tc" inside "tcp" is not a whole word
    assert expand_abbreviations("tcp socket").expanded == "tcp socket"


def test_abbreviation_expansion_is_idempotent() -> None:
    first = expand_abbreviations("regression run for negative tc")
    second = expand_abbreviations(first.expanded)
    assert first.expanded == "regression testing run for negative testing test case"
    assert second.expanded == first.expanded
    assert second.replacements == []


def test_custom_abbreviations_override_builtin() -> None:
    res = expand_abbreviations("api smoke", custom={"API": "public interface"})
    assert res.expanded == "public interface smoke testing"
    merged = merge_dictionary({"a": 1, "b": 2}, {"B": 3, "c": 4})
    assert list(merged.items()) == [("a", 1), ("b", 3), ("c", 4)]


def test_synonym_variations_keep_original_first_and_respect_cap() -> None:
    text = "negative payment timeout"
    for cap in (1, 2, 5, 50):
        res = expand_synonyms(text, max_variations=cap)
        assert res.variations[0] == text
        assert 1 <= len(res.variations) <= cap
        assert len(set(res.variations)) == len(res.variations)


def test_synonym_expansion_is_single_substitution() -> None:
    res = expand_synonyms("negative timeout", {"negative": ["invalid"], "timeout": ["delay"]}, max_variations=50)
    assert "invalid timeout" in res.variations
    assert "negative delay" in res.variations
    assert "invalid delay" not in res.variations


def test_payment_timeout_scenario_yields_multiple_variations() -> None:
    synonyms = {
        "negative": ["invalid", "error", "failure", "exception"],
        "timeout": ["delay", "hang", "slow", "stuck", "unresponsive"],
    }
    cfg = PreprocessConfig(enable_abbreviations=False, custom_synonyms=synonyms)
    processed = preprocess_query(PAYMENT_QUERY, cfg)
    normalized = "what are the negative test cases for payment timeout"
    assert processed.normalized == normalized
    assert processed.variations[0] == normalized
    assert len(processed.variations) >= 2
    assert processed.search_text == normalized
    assert processed.error is None


def test_preprocess_default_config_snapshot() -> None:
    processed = preprocess_query("Find US-7 regression")
    assert processed.identifiers == ["US-7"]
    assert processed.expanded == "find us-7 regression testing"
    snap = processed.to_snapshot()
    assert snap["replacements"] == [{"from": "regression", "to": "regression testing"}]
    assert set(snap["metadata"]["steps"]) == {"normalize", "abbreviation", "synonym"}
    assert len(processed.variations) <= PreprocessConfig().max_synonym_variations


@pytest.mark.parametrize("raw", ["", None, 123])
def test_preprocess_never_raises_on_bad_input(raw) -> None:
    processed = preprocess_query(raw)
    assert processed.error is not None
    assert processed.variations == [processed.normalized]


def test_preprocess_degrades_when_a_step_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(*_args, **_kwargs):
        raise RuntimeError("dictionary corrupted")

    monkeypatch.setattr(pipeline_mod, "expand_abbreviations", _boom)
    processed = preprocess_query("Negative Payment TIMEOUT")
    assert processed.error is not None and "dictionary corrupted" in processed.error
    assert processed.search_text == "negative payment timeout"
    assert processed.replacements == []
    assert processed.identifiers == []
