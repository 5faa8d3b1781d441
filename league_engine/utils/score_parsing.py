"""
Derives per-side set and game totals from raw score lines.

Tennis and padel report games per set; when the third set is played as a
match tiebreak its points stand in for games. Pickleball reports points per
game, so pickleball games are counted as sets and points as games.

FinalizedMatch.from_dict runs payload score lines through these parsers.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from league_engine.data_models.match import SideScore
from league_engine.utils.exceptions import ValidationError


class ThirdSetFormat(Enum):
    MATCH_TIEBREAK = "match_tiebreak"
    FULL_SET = "full_set"


@dataclass(frozen=True)
class SetScore:
    set_number: int
    team1_games: int
    team2_games: int
    team1_tiebreak: Optional[int] = None
    team2_tiebreak: Optional[int] = None


@dataclass(frozen=True)
class GameScore:
    game_number: int
    team1_points: int
    team2_points: int


@dataclass(frozen=True)
class MatchOutcome:
    team1: SideScore
    team2: SideScore
    winning_team: int


def _outcome(team1_sets: int, team2_sets: int, team1_games: int, team2_games: int) -> MatchOutcome:
    if team1_sets == team2_sets:
        raise ValidationError(f"Score lines are level at {team1_sets} sets each")
    team1 = SideScore(sets_won=team1_sets, sets_lost=team2_sets,
                      games_won=team1_games, games_lost=team2_games)
    return MatchOutcome(team1=team1, team2=team1.mirrored(),
                        winning_team=1 if team1_sets > team2_sets else 2)


def parse_tennis_padel_outcome(set_scores: Sequence[SetScore],
                               third_set_format: ThirdSetFormat = ThirdSetFormat.MATCH_TIEBREAK) -> MatchOutcome:
    """
    Total sets and games for a tennis or padel match.

    Args:
        set_scores: One entry per played set
        third_set_format: How a third set was played

    Returns:
        MatchOutcome with side totals and the winning team

    Raises:
        ValidationError: If no sets are given, a value is negative, or a set has no winner
    """
    if not set_scores:
        raise ValidationError("At least one set score is required")

    team1_sets = team2_sets = team1_games = team2_games = 0
    for score in sorted(set_scores, key=lambda s: s.set_number):
        values = [score.team1_games, score.team2_games, score.team1_tiebreak or 0, score.team2_tiebreak or 0]
        if min(values) < 0:
            raise ValidationError(f"Set {score.set_number} has a negative score")

        if score.team1_games != score.team2_games:
            team1_won = score.team1_games > score.team2_games
        else:
            tiebreak1, tiebreak2 = score.team1_tiebreak or 0, score.team2_tiebreak or 0
            if tiebreak1 == tiebreak2:
                raise ValidationError(f"Set {score.set_number} is level with no tiebreak winner")
            team1_won = tiebreak1 > tiebreak2

        if team1_won:
            team1_sets += 1
        else:
            team2_sets += 1

        is_match_tiebreak = score.set_number == 3 and third_set_format == ThirdSetFormat.MATCH_TIEBREAK
        if is_match_tiebreak and score.team1_tiebreak is not None and score.team2_tiebreak is not None:
            team1_games += score.team1_tiebreak
            team2_games += score.team2_tiebreak
        else:
            team1_games += score.team1_games
            team2_games += score.team2_games

    return _outcome(team1_sets, team2_sets, team1_games, team2_games)


def parse_pickleball_outcome(game_scores: Sequence[GameScore]) -> MatchOutcome:
    """
    Total games (as sets) and points (as games) for a pickleball match.

    Raises:
        ValidationError: If no games are given, a value is negative, or a game is drawn
    """
    if not game_scores:
        raise ValidationError("At least one game score is required")

    team1_games = team2_games = team1_points = team2_points = 0
    for score in game_scores:
        if min(score.team1_points, score.team2_points) < 0:
            raise ValidationError(f"Game {score.game_number} has a negative score")
        if score.team1_points == score.team2_points:
            raise ValidationError(f"Game {score.game_number} cannot end level")
        if score.team1_points > score.team2_points:
            team1_games += 1
        else:
            team2_games += 1
        team1_points += score.team1_points
        team2_points += score.team2_points

    return _outcome(team1_games, team2_games, team1_points, team2_points)
