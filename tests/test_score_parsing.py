"""Tests for deriving side totals from score lines."""
import pytest

from league_engine.utils.exceptions import ValidationError
from league_engine.utils.score_parsing import (
    GameScore, SetScore, ThirdSetFormat, parse_pickleball_outcome, parse_tennis_padel_outcome
)


class TestTennisPadel:
    def test_straight_sets(self):
        outcome = parse_tennis_padel_outcome([SetScore(1, 6, 3), SetScore(2, 6, 4)])

        assert outcome.winning_team == 1
        assert (outcome.team1.sets_won, outcome.team1.sets_lost) == (2, 0)
        assert (outcome.team1.games_won, outcome.team1.games_lost) == (12, 7)
        assert outcome.team2 == outcome.team1.mirrored()

    def test_tiebreak_set(self):
        outcome = parse_tennis_padel_outcome([SetScore(1, 6, 7, 5, 7), SetScore(2, 3, 6)])
        assert outcome.winning_team == 2
        assert (outcome.team2.games_won, outcome.team2.games_lost) == (13, 9)

    def test_match_tiebreak_points_count_as_games(self):
        outcome = parse_tennis_padel_outcome([
            SetScore(1, 6, 4), SetScore(2, 3, 6), SetScore(3, 0, 0, 10, 8),
        ])
        assert outcome.winning_team == 1
        assert (outcome.team1.sets_won, outcome.team1.sets_lost) == (2, 1)
        assert (outcome.team1.games_won, outcome.team1.games_lost) == (19, 18)

    def test_full_third_set(self):
        outcome = parse_tennis_padel_outcome(
            [SetScore(1, 6, 4), SetScore(2, 3, 6), SetScore(3, 7, 5)],
            third_set_format=ThirdSetFormat.FULL_SET,
        )
        assert (outcome.team1.games_won, outcome.team1.games_lost) == (16, 15)

    def test_level_set_without_tiebreak(self):
        with pytest.raises(ValidationError):
            parse_tennis_padel_outcome([SetScore(1, 6, 6)])

    def test_no_sets(self):
        with pytest.raises(ValidationError):
            parse_tennis_padel_outcome([])

    def test_level_match(self):
        with pytest.raises(ValidationError):
            parse_tennis_padel_outcome([SetScore(1, 6, 3), SetScore(2, 3, 6)])


class TestPickleball:
    def test_games_become_sets_and_points_become_games(self):
        outcome = parse_pickleball_outcome([GameScore(1, 11, 7), GameScore(2, 9, 11), GameScore(3, 11, 4)])

        assert outcome.winning_team == 1
        assert (outcome.team1.sets_won, outcome.team1.sets_lost) == (2, 1)
        assert (outcome.team1.games_won, outcome.team1.games_lost) == (31, 22)

    def test_drawn_game(self):
        with pytest.raises(ValidationError):
            parse_pickleball_outcome([GameScore(1, 10, 10)])

    def test_negative_points(self):
        with pytest.raises(ValidationError):
            parse_pickleball_outcome([GameScore(1, -1, 11)])
