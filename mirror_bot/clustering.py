"""Union-find clustering of market legs into cross-venue equivalence groups.

Every unordered leg pair is scored exactly once. A pair is *accepted* (and
its two legs unioned) when the similarity clears the threshold, the close
times are within the allowed window, and the venue rule holds. Groups are
the connected components of the accepted relation, so membership is
transitive through accepted pairs only; the summarizer re-audits all pairs
inside a group afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence

import numpy as np

from mirror_bot.config import MatchSettings
from mirror_bot.models import MarketLeg, PairCheck, SimilarityResult
from mirror_bot.numeric import round_half_up
from mirror_bot.similarity import question_similarity

LOGGER = logging.getLogger(__name__)


class DisjointSet:
    """Disjoint-set forest over the indices ``0..size-1``."""

    def __init__(self, size: int) -> None:
        self._parent = list(range(size))

    def __len__(self) -> int:
        return len(self._parent)

    def find(self, index: int) -> int:
        root = index
        while self._parent[root] != root:
            root = self._parent[root]
        # Path compression.
        while self._parent[index] != root:
            self._parent[index], index = root, self._parent[index]
        return root

    def union(self, left: int, right: int) -> bool:
        left_root = self.find(left)
        right_root = self.find(right)
        if left_root == right_root:
            return False
        self._parent[right_root] = left_root
        return True

    def groups(self) -> List[List[int]]:
        """Components ordered by their first member; members ascending."""
        by_root: Dict[int, List[int]] = {}
        for index in range(len(self._parent)):
            by_root.setdefault(self.find(index), []).append(index)
        return list(by_root.values())


def default_leg_id(leg: MarketLeg, index: int) -> str:
    return leg.leg_id or f"{leg.venue}:{leg.market_id or 'unknown'}:{index}"


def pair_key(left_id: str, right_id: str) -> str:
    return "|".join(sorted((left_id, right_id)))


def close_diff_hours(left: MarketLeg, right: MarketLeg) -> float | None:
    # Zero/None timestamps count as unknown.
    if not left.close_timestamp or not right.close_timestamp:
        return None
    return abs(left.close_timestamp - right.close_timestamp) / 3600


@dataclass
class ClusterResult:
    legs: tuple[MarketLeg, ...]
    leg_ids: tuple[str, ...]
    groups: List[List[int]]
    accepted_pairs: Dict[str, PairCheck]
    similarity_matrix: np.ndarray
    pair_similarity: Dict[tuple[int, int], SimilarityResult]
    settings: MatchSettings

    def similarity(self, left: int, right: int) -> SimilarityResult:
        if left > right:
            left, right = right, left
        return self.pair_similarity[(left, right)]

    def pair_check(self, left: int, right: int) -> PairCheck:
        if left > right:
            left, right = right, left
        left_leg = self.legs[left]
        right_leg = self.legs[right]
        similarity = self.similarity(left, right)
        diff_hours = close_diff_hours(left_leg, right_leg)
        return PairCheck(
            left_leg_id=self.leg_ids[left],
            right_leg_id=self.leg_ids[right],
            left_venue=left_leg.venue,
            right_venue=right_leg.venue,
            left_question=left_leg.question,
            right_question=right_leg.question,
            similarity=similarity,
            close_diff_hours=None if diff_hours is None else round_half_up(diff_hours, 6),
            passes_similarity=similarity.score >= self.settings.similarity_threshold,
            passes_close_window=diff_hours is None or diff_hours <= self.settings.max_close_diff_hours,
            passes_venue_rule=not self.settings.cross_venue_only or left_leg.venue != right_leg.venue,
        )


def build_groups(legs: Sequence[MarketLeg], settings: MatchSettings) -> ClusterResult:
    legs = tuple(legs)
    size = len(legs)
    leg_ids = tuple(default_leg_id(leg, index) for index, leg in enumerate(legs))
    disjoint = DisjointSet(size)
    matrix = np.eye(size, dtype=float)
    pair_similarity: Dict[tuple[int, int], SimilarityResult] = {}
    accepted: Dict[str, PairCheck] = {}

    result = ClusterResult(
        legs=legs,
        leg_ids=leg_ids,
        groups=[],
        accepted_pairs=accepted,
        similarity_matrix=matrix,
        pair_similarity=pair_similarity,
        settings=settings,
    )

    for i in range(size):
        for j in range(i + 1, size):
            similarity = question_similarity(legs[i].question, legs[j].question)
            pair_similarity[(i, j)] = similarity
            matrix[i, j] = matrix[j, i] = similarity.score

            check = result.pair_check(i, j)
            if not check.accepted:
                continue
            disjoint.union(i, j)
            accepted[pair_key(leg_ids[i], leg_ids[j])] = check

    result.groups = [members for members in disjoint.groups() if len(members) >= 2]
    LOGGER.debug(
        "clustered legs=%d accepted_pairs=%d groups=%d",
        size,
        len(accepted),
        len(result.groups),
    )
    return result
