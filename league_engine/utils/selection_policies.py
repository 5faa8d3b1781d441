"""
Best-K Selection Strategy Pattern for Divisional Standings

Each strategy decides which of an entity's results count toward its standings
total. Every strategy counts at most K results and leaves the others in the
record (they still count toward matches played, wins and losses).

Policies:
- FIRST_K_CHRONOLOGICAL: the first K results by sequence, regardless of points
- TOP_K_BY_POINTS: the K highest-scoring results
- WINS_FIRST_THEN_BEST_LOSSES: the first K wins by sequence, topped up with the
  strongest losses when fewer than K wins exist
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Sequence, Set

from league_engine.data_models.standings import ResultRecord


class SelectionPolicy(Enum):
    FIRST_K_CHRONOLOGICAL = "first_k_chronological"
    TOP_K_BY_POINTS = "top_k_by_points"
    WINS_FIRST_THEN_BEST_LOSSES = "wins_first_then_best_losses"


DEFAULT_SELECTION_POLICY = SelectionPolicy.FIRST_K_CHRONOLOGICAL


class SelectionStrategy(ABC):
    """
    Abstract base class for best-K selection strategies.

    Strategies receive an entity's results in any order and return the
    sequence numbers of the results that count.
    """

    def __init__(self, k: int):
        if k < 1:
            raise ValueError(f"K must be at least 1, got {k}")
        self.k = k

    @abstractmethod
    def select(self, results: Sequence[ResultRecord]) -> Set[int]:
        """
        Choose the counted results.

        Args:
            results: All of one entity's results in one division and season

        Returns:
            result_sequence values of the counted results, at most K of them
        """
        pass

    @abstractmethod
    def get_policy(self) -> SelectionPolicy:
        pass

    def apply(self, results: Sequence[ResultRecord]) -> List[ResultRecord]:
        """Return the results in sequence order with counts_for_standings set"""
        counted = self.select(results)
        return [
            r.with_counted(r.result_sequence in counted)
            for r in sorted(results, key=lambda r: r.result_sequence)
        ]


class FirstKChronologicalStrategy(SelectionStrategy):
    """Counts the K earliest results by sequence number."""

    def select(self, results: Sequence[ResultRecord]) -> Set[int]:
        ordered = sorted(results, key=lambda r: r.result_sequence)
        return {r.result_sequence for r in ordered[:self.k]}

    def get_policy(self) -> SelectionPolicy:
        return SelectionPolicy.FIRST_K_CHRONOLOGICAL


class TopKByPointsStrategy(SelectionStrategy):
    """
    Counts the K highest match point totals.

    Ties on points prefer the larger games margin, then the earlier result.
    """

    def select(self, results: Sequence[ResultRecord]) -> Set[int]:
        ordered = sorted(results, key=lambda r: (-r.match_points, -r.margin, r.result_sequence))
        return {r.result_sequence for r in ordered[:self.k]}

    def get_policy(self) -> SelectionPolicy:
        return SelectionPolicy.TOP_K_BY_POINTS


class WinsFirstThenBestLossesStrategy(SelectionStrategy):
    """
    Counts the first K wins, then fills remaining slots with the strongest losses.

    Losses are ranked by match points, then games margin, then most recent play.
    """

    def select(self, results: Sequence[ResultRecord]) -> Set[int]:
        wins = sorted((r for r in results if r.is_win), key=lambda r: r.result_sequence)
        counted = [r.result_sequence for r in wins[:self.k]]

        remaining = self.k - len(counted)
        if remaining > 0:
            losses = sorted(
                (r for r in results if not r.is_win),
                key=lambda r: (-r.match_points, -r.margin, -r.date_played.timestamp(), r.result_sequence)
            )
            counted.extend(r.result_sequence for r in losses[:remaining])
        return set(counted)

    def get_policy(self) -> SelectionPolicy:
        return SelectionPolicy.WINS_FIRST_THEN_BEST_LOSSES


STRATEGY_CLASSES: Dict[SelectionPolicy, type] = {
    SelectionPolicy.FIRST_K_CHRONOLOGICAL: FirstKChronologicalStrategy,
    SelectionPolicy.TOP_K_BY_POINTS: TopKByPointsStrategy,
    SelectionPolicy.WINS_FIRST_THEN_BEST_LOSSES: WinsFirstThenBestLossesStrategy,
}


def get_selection_strategy(policy: SelectionPolicy, k: int) -> SelectionStrategy:
    """Factory for the strategy implementing a policy"""
    return STRATEGY_CLASSES[SelectionPolicy(policy)](k)
