"""
Rating data models.

Immutable parameter snapshots threaded through every rating computation, the
working state the calculator advances, and the outbound history records.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from league_engine.database.models import RatingChangeReason


@dataclass(frozen=True)
class RatingParametersSnapshot:
    """One published rating parameters version, read once per computation."""
    version: int
    initial_rating: int
    initial_rd: int
    initial_volatility: float
    k_factor_new: int
    k_factor_established: int
    k_factor_threshold: int
    singles_weight: float
    doubles_weight: float
    one_set_match_weight: float
    walkover_win_impact: float
    walkover_loss_impact: float
    provisional_threshold: int
    rating_floor: int
    min_rd: int
    rd_decay: float
    effective_from: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> 'RatingParametersSnapshot':
        return cls(
            version=row.version,
            initial_rating=row.initial_rating,
            initial_rd=row.initial_rd,
            initial_volatility=row.initial_volatility,
            k_factor_new=row.k_factor_new,
            k_factor_established=row.k_factor_established,
            k_factor_threshold=row.k_factor_threshold,
            singles_weight=row.singles_weight,
            doubles_weight=row.doubles_weight,
            one_set_match_weight=row.one_set_match_weight,
            walkover_win_impact=row.walkover_win_impact,
            walkover_loss_impact=row.walkover_loss_impact,
            provisional_threshold=row.provisional_threshold,
            rating_floor=row.rating_floor,
            min_rd=row.min_rd,
            rd_decay=row.rd_decay,
            effective_from=row.effective_from,
        )


@dataclass(frozen=True)
class RatingState:
    """A player's rating at one point of the season."""
    player_id: str
    rating: int
    rating_deviation: int
    volatility: float
    matches_played: int
    is_provisional: bool
    peak_rating: int
    peak_rating_date: Optional[datetime]
    lowest_rating: int
    last_match_at: Optional[datetime] = None

    @classmethod
    def initial(cls, player_id: str, params: RatingParametersSnapshot) -> 'RatingState':
        return cls(
            player_id=player_id,
            rating=params.initial_rating,
            rating_deviation=params.initial_rd,
            volatility=params.initial_volatility,
            matches_played=0,
            is_provisional=params.provisional_threshold > 0,
            peak_rating=params.initial_rating,
            peak_rating_date=None,
            lowest_rating=params.initial_rating,
        )

    @classmethod
    def from_row(cls, row) -> 'RatingState':
        return cls(
            player_id=row.player_id,
            rating=row.current_rating,
            rating_deviation=row.rating_deviation,
            volatility=row.volatility,
            matches_played=row.matches_played,
            is_provisional=row.is_provisional,
            peak_rating=row.peak_rating,
            peak_rating_date=row.peak_rating_date,
            lowest_rating=row.lowest_rating,
            last_match_at=row.last_match_at,
        )

    def with_rating(self, rating: int, at: Optional[datetime]) -> 'RatingState':
        """Move the rating, refreshing peak and lowest."""
        state = replace(self, rating=rating)
        if rating > self.peak_rating:
            state = replace(state, peak_rating=rating, peak_rating_date=at)
        if rating < self.lowest_rating:
            state = replace(state, lowest_rating=rating)
        return state

    def write_to(self, row):
        row.current_rating = self.rating
        row.rating_deviation = self.rating_deviation
        row.volatility = self.volatility
        row.matches_played = self.matches_played
        row.is_provisional = self.is_provisional
        row.peak_rating = self.peak_rating
        row.peak_rating_date = self.peak_rating_date
        row.lowest_rating = self.lowest_rating
        row.last_match_at = self.last_match_at

    def as_dict(self) -> dict:
        return {
            'rating': self.rating,
            'rating_deviation': self.rating_deviation,
            'matches_played': self.matches_played,
            'is_provisional': self.is_provisional,
            'peak_rating': self.peak_rating,
            'lowest_rating': self.lowest_rating,
        }


@dataclass(frozen=True)
class RatingChange:
    """One computed rating movement, ready to become a history row."""
    player_id: str
    before: RatingState
    after: RatingState
    reason: RatingChangeReason
    effective_at: datetime
    match_id: Optional[str] = None
    k_factor: int = 0
    expected_score: float = 0.0
    notes: Optional[str] = None
    adjustment_id: Optional[int] = None

    @property
    def delta(self) -> int:
        return self.after.rating - self.before.rating


@dataclass(frozen=True)
class RatingHistoryEntry:
    """Outbound rating history record."""
    history_id: int
    player_id: str
    season_id: str
    match_id: Optional[str]
    rating_before: int
    rating_after: int
    delta: int
    rd_before: int
    rd_after: int
    reason: RatingChangeReason
    notes: Optional[str]
    effective_at: datetime
    parameters_version: Optional[int]
