"""Tests for question normalization and similarity scoring."""

from __future__ import annotations

import pytest

from mirror_bot.similarity import (
    jaro,
    jaro_winkler,
    normalize_question,
    question_similarity,
    token_similarity,
)


# ---------------------------------------------------------------------------
# normalize_question
# ---------------------------------------------------------------------------


class TestNormalizeQuestion:
    def test_strips_punctuation_and_stopwords(self) -> None:
        assert normalize_question("Will, the Arsenal win the PL?!") == "arsenal win pl"

    def test_collapses_whitespace(self) -> None:
        assert normalize_question("  Bitcoin   above\t100k  ") == "bitcoin above 100k"

    def test_stopwords_match_whole_words_only(self) -> None:
        # "another" contains "a"/"an" but is not a stopword.
        assert normalize_question("Another win for the Bears") == "another win bears"

    def test_none_is_empty(self) -> None:
        assert normalize_question(None) == ""

    def test_idempotent(self) -> None:
        once = normalize_question("Will BTC hit $100k by 2026?")
        assert normalize_question(once) == once


# ---------------------------------------------------------------------------
# token / jaro scores
# ---------------------------------------------------------------------------


class TestComponentScores:
    def test_token_jaccard(self) -> None:
        assert token_similarity("a b c", "a b d") == pytest.approx(0.5)

    def test_token_empty_side_scores_zero(self) -> None:
        assert token_similarity("", "bitcoin") == 0.0

    def test_jaro_classic_pair(self) -> None:
        assert jaro("martha", "marhta") == pytest.approx(0.944444, abs=1e-6)

    def test_jaro_winkler_classic_pair(self) -> None:
        assert jaro_winkler("martha", "marhta") == pytest.approx(0.961111, abs=1e-6)

    def test_jaro_no_common_chars(self) -> None:
        assert jaro("abc", "xyz") == 0.0

    def test_jaro_winkler_never_below_jaro(self) -> None:
        for left, right in [("dixon", "dicksonx"), ("arsenal win", "arsenal lose"), ("abc", "xbc")]:
            assert jaro_winkler(left, right) >= jaro(left, right)


# ---------------------------------------------------------------------------
# question_similarity
# ---------------------------------------------------------------------------


class TestQuestionSimilarity:
    def test_identical_after_normalization_scores_one(self) -> None:
        result = question_similarity("Will Arsenal win the Premier League?", "Arsenal to win the premier league")
        assert result.normalized_left == result.normalized_right == "arsenal win premier league"
        assert result.score == 1.0

    def test_symmetric(self) -> None:
        pairs = [
            ("martha", "marhta"),
            ("aaaa bbbb", "aaaa bbbb cccc"),
            ("Will Arsenal win?", "Arsenal win the league"),
        ]
        for left, right in pairs:
            forward = question_similarity(left, right)
            backward = question_similarity(right, left)
            assert forward.score == pytest.approx(backward.score, abs=1e-6)

    def test_score_is_weighted_blend(self) -> None:
        result = question_similarity("martha", "marhta")
        # Single distinct tokens: Jaccard 0, so only the JW half contributes.
        assert result.token_score == 0.0
        assert result.score == pytest.approx(0.45 * 0.961111, abs=1e-6)

    def test_bounded(self) -> None:
        result = question_similarity("Will ETH flip BTC?", "Lakers win the title")
        assert 0.0 <= result.score <= 1.0

    def test_rounded_to_six_places(self) -> None:
        result = question_similarity("dixon", "dicksonx")
        assert result.score == round(result.score, 6)

    def test_to_dict_keys(self) -> None:
        payload = question_similarity("a", "b").to_dict()
        assert set(payload) == {"normalizedLeft", "normalizedRight", "tokenScore", "jaroWinkler", "score"}
