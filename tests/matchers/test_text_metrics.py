from __future__ import annotations

import pytest

from promptgrade.matchers import (
    cosine_similarity,
    first_json_value,
    iter_json_values,
    matches_levenshtein,
    matches_rouge,
    rouge_n,
)


def test_rouge_n_is_unigram_recall_with_clipped_counts():
    assert rouge_n("the cat sat", "the cat sat") == 1
    assert rouge_n("the the the", "the cat") == pytest.approx(0.5)
    assert rouge_n("anything", "") == 0


def test_matches_rouge_reasons():
    passed = matches_rouge("The cat sat on the mat", "the cat sat on the mat", None)
    assert passed.passed
    assert passed.reason == "ROUGE-N score 1 is greater than or equal to threshold 0.75"

    failed = matches_rouge("a b c d e", "a x y z w", 0.75)
    assert not failed.passed
    assert failed.reason == "ROUGE-N score 0.2 is less than threshold 0.75"


def test_matches_rouge_inverse_flips_pass_and_score():
    result = matches_rouge("a b c d e", "a x y z w", 0.75, inverse=True)
    assert result.passed
    assert result.score == pytest.approx(0.8)


def test_matches_levenshtein():
    failed = matches_levenshtein("Expected output", "Different output", 5)
    assert not failed.passed
    assert failed.reason == "Levenshtein distance 8 is greater than threshold 5"

    passed = matches_levenshtein("kitten", "sitting", None)
    assert passed.passed and passed.reason == "Assertion passed"


def test_cosine_similarity():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0)
    with pytest.raises(ValueError):
        cosine_similarity([1], [1, 2])


def test_json_scan_returns_values_left_to_right():
    text = 'x {"a": 1} y [2, 3] z {broken'
    assert list(iter_json_values(text)) == [{"a": 1}, [2, 3]]
    assert first_json_value("nothing") is None


def test_json_scan_prefers_outermost_value():
    assert first_json_value('{"outer": {"inner": 1}}') == {"outer": {"inner": 1}}


def test_json_scan_skips_bracket_runs_too_deep_to_decode():
    text = "[" * 100000 + "[1]"
    assert first_json_value(text) == [1]
