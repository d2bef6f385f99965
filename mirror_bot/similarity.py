"""Question normalization and pairwise similarity scoring.

Scores blend a word-set Jaccard index with Jaro-Winkler over the
normalized text. Match thresholds are tuned against this exact pipeline,
so the normalization rules must not drift.
"""

from __future__ import annotations

import re
from typing import Any

from mirror_bot.models import SimilarityResult
from mirror_bot.numeric import round_half_up

STOPWORDS = ("the", "a", "an", "will", "be", "on", "at", "in", "to", "for", "by", "of", "is", "are", "was", "were")

TOKEN_WEIGHT = 0.55
JARO_WINKLER_WEIGHT = 0.45

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_STOPWORD_RE = re.compile(r"\b(?:" + "|".join(STOPWORDS) + r")\b")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_question(text: Any) -> str:
    value = str(text or "").lower()
    value = _NON_ALNUM_RE.sub(" ", value)
    value = _STOPWORD_RE.sub(" ", value)
    return _WHITESPACE_RE.sub(" ", value).strip()


def _tokens(text: str) -> set[str]:
    return {token for token in text.split(" ") if token}


def token_similarity(left: str, right: str) -> float:
    """Jaccard index over word sets; empty sets score 0."""
    left_tokens = _tokens(left)
    right_tokens = _tokens(right)
    if not left_tokens or not right_tokens:
        return 0.0
    intersection = len(left_tokens & right_tokens)
    union = len(left_tokens | right_tokens)
    return intersection / union if union else 0.0


def jaro(left: str, right: str) -> float:
    if left == right:
        return 1.0
    left_len = len(left)
    right_len = len(right)
    if left_len == 0 or right_len == 0:
        return 0.0

    match_distance = max(left_len, right_len) // 2 - 1
    left_matches = [False] * left_len
    right_matches = [False] * right_len

    matches = 0
    for i in range(left_len):
        start = max(0, i - match_distance)
        end = min(i + match_distance + 1, right_len)
        for j in range(start, end):
            if right_matches[j] or left[i] != right[j]:
                continue
            left_matches[i] = True
            right_matches[j] = True
            matches += 1
            break

    if matches == 0:
        return 0.0

    transpositions = 0
    k = 0
    for i in range(left_len):
        if not left_matches[i]:
            continue
        while not right_matches[k]:
            k += 1
        if left[i] != right[k]:
            transpositions += 1
        k += 1

    half_transpositions = transpositions / 2
    return (
        matches / left_len
        + matches / right_len
        + (matches - half_transpositions) / matches
    ) / 3


def jaro_winkler(left: str, right: str, prefix_scale: float = 0.1) -> float:
    score = jaro(left, right)
    prefix = 0
    for left_char, right_char in zip(left[:4], right[:4]):
        if left_char != right_char:
            break
        prefix += 1
    return score + prefix * prefix_scale * (1 - score)


def question_similarity(left: Any, right: Any) -> SimilarityResult:
    normalized_left = normalize_question(left)
    normalized_right = normalize_question(right)
    token_score = token_similarity(normalized_left, normalized_right)
    jw_score = jaro_winkler(normalized_left, normalized_right)
    score = TOKEN_WEIGHT * token_score + JARO_WINKLER_WEIGHT * jw_score
    return SimilarityResult(
        normalized_left=normalized_left,
        normalized_right=normalized_right,
        token_score=round_half_up(token_score, 6),
        jaro_winkler=round_half_up(jw_score, 6),
        score=round_half_up(score, 6),
    )
