import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Sequence, Tuple

from league_engine.data_models.ratings import RatingChange, RatingParametersSnapshot, RatingState
from league_engine.data_models.standings import ResultRecord
from league_engine.database.models import GameType, RatingChangeReason
from league_engine.utils.exceptions import ValidationError


@dataclass(frozen=True)
class RatedMatch:
    """The rating-relevant shape of one match, rebuilt from its result rows"""
    match_id: str
    season_id: str
    game_type: GameType
    is_walkover: bool
    is_one_set: bool
    teams: Dict[int, Tuple[str, ...]]
    winning_team: int
    date_played: datetime
    match_created_at: datetime

    @classmethod
    def from_results(cls, results: Sequence[ResultRecord]) -> 'RatedMatch':
        """
        Group one match's result rows into sides.

        Raises:
            ValidationError: If the rows do not describe one two-sided match with one winner
        """
        if not results:
            raise ValidationError("Cannot rate a match without results")
        first = results[0]
        if any(r.match_id != first.match_id for r in results):
            raise ValidationError("Results from different matches cannot be rated together")

        teams: Dict[int, List[str]] = {}
        for result in sorted(results, key=lambda r: (r.team, r.entity_id)):
            teams.setdefault(result.team, []).append(result.entity_id)
        winners = {r.team for r in results if r.is_win}
        if len(teams) != 2 or len(winners) != 1:
            raise ValidationError(f"Match {first.match_id} does not have two sides and one winner")

        return cls(
            match_id=first.match_id,
            season_id=first.season_id,
            game_type=first.game_type,
            is_walkover=first.is_walkover,
            is_one_set=first.is_one_set,
            teams={team: tuple(members) for team, members in teams.items()},
            winning_team=winners.pop(),
            date_played=first.date_played,
            match_created_at=first.match_created_at,
        )

    @property
    def players(self) -> List[str]:
        return [player for team in sorted(self.teams) for player in self.teams[team]]

    def opposing_team(self, team: int) -> int:
        return next(t for t in self.teams if t != team)


class RatingCalculator:
    """Handles rating calculations for the league"""

    @staticmethod
    def calculate_expected_score(rating_a: float, rating_b: float) -> float:
        """
        Calculate the expected score for side A against side B

        Args:
            rating_a: Side A's rating
            rating_b: Side B's rating

        Returns:
            Expected score (0.0 to 1.0) for side A
        """
        return 1 / (1 + math.pow(10, (rating_b - rating_a) / 400))

    @staticmethod
    def get_k_factor(state: RatingState, params: RatingParametersSnapshot) -> int:
        """New-player K applies while provisional or below the K threshold"""
        if state.is_provisional or state.matches_played < params.k_factor_threshold:
            return params.k_factor_new
        return params.k_factor_established

    @staticmethod
    def get_format_weight(game_type: GameType, is_one_set: bool,
                          params: RatingParametersSnapshot) -> float:
        weight = params.singles_weight if game_type == GameType.SINGLES else params.doubles_weight
        if is_one_set:
            weight *= params.one_set_match_weight
        return weight

    @staticmethod
    def get_walkover_impact(is_walkover: bool, is_win: bool,
                            params: RatingParametersSnapshot) -> float:
        if not is_walkover:
            return 1.0
        return params.walkover_win_impact if is_win else params.walkover_loss_impact

    @staticmethod
    def calculate_delta(k_factor: int, format_weight: float, walkover_impact: float,
                        actual_score: float, expected_score: float) -> int:
        return round(k_factor * format_weight * walkover_impact * (actual_score - expected_score))

    @staticmethod
    def decay_rating_deviation(rating_deviation: int, params: RatingParametersSnapshot) -> int:
        """Shrink RD toward its floor; never increases"""
        return max(params.min_rd, min(rating_deviation, round(rating_deviation * params.rd_decay)))

    @staticmethod
    def is_provisional(matches_played: int, params: RatingParametersSnapshot) -> bool:
        return matches_played < params.provisional_threshold

    @staticmethod
    def side_rating(states: Dict[str, RatingState], members: Sequence[str]) -> float:
        return sum(states[m].rating for m in members) / len(members)

    @staticmethod
    def rate_match(states: Dict[str, RatingState], match: RatedMatch,
                   params: RatingParametersSnapshot) -> List[RatingChange]:
        """
        Compute every participant's rating change for one match.

        All deltas are computed from pre-match ratings, so the order of
        participants does not affect the outcome.

        Args:
            states: Current rating state for every player in the match
            match: The match to rate
            params: Parameters snapshot for this computation

        Returns:
            One RatingChange per player, in team then player id order
        """
        side_ratings = {team: RatingCalculator.side_rating(states, members)
                        for team, members in match.teams.items()}
        format_weight = RatingCalculator.get_format_weight(match.game_type, match.is_one_set, params)

        changes = []
        for team in sorted(match.teams):
            is_win = team == match.winning_team
            expected = RatingCalculator.calculate_expected_score(
                side_ratings[team], side_ratings[match.opposing_team(team)]
            )
            impact = RatingCalculator.get_walkover_impact(match.is_walkover, is_win, params)
            for player_id in match.teams[team]:
                before = states[player_id]
                k_factor = RatingCalculator.get_k_factor(before, params)
                delta = RatingCalculator.calculate_delta(
                    k_factor, format_weight, impact, 1.0 if is_win else 0.0, expected
                )
                matches_played = before.matches_played + 1
                after = replace(
                    before.with_rating(max(before.rating + delta, params.rating_floor), match.date_played),
                    rating_deviation=RatingCalculator.decay_rating_deviation(before.rating_deviation, params),
                    matches_played=matches_played,
                    is_provisional=RatingCalculator.is_provisional(matches_played, params),
                    last_match_at=match.date_played,
                )
                changes.append(RatingChange(
                    player_id=player_id,
                    before=before,
                    after=after,
                    reason=RatingCalculator.get_reason(match.is_walkover, is_win),
                    effective_at=match.date_played,
                    match_id=match.match_id,
                    k_factor=k_factor,
                    expected_score=expected,
                ))
        return changes

    @staticmethod
    def get_reason(is_walkover: bool, is_win: bool) -> RatingChangeReason:
        if is_walkover:
            return RatingChangeReason.WALKOVER_WIN if is_win else RatingChangeReason.WALKOVER_LOSS
        return RatingChangeReason.MATCH_WIN if is_win else RatingChangeReason.MATCH_LOSS
