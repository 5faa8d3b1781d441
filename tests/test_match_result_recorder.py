"""Tests for scoring and recording finalized matches."""
from dataclasses import replace

import pytest
from sqlalchemy import select

from league_engine.data_models.match import FinalizedMatch, Participant, SideScore
from league_engine.database.models import MatchResult, MatchStatus
from league_engine.operations.match_result_recorder import MatchResultRecorder, score_side
from league_engine.utils.exceptions import DuplicateResult, IncompleteMatch, ValidationError


class TestScoring:
    def test_straight_sets_win_scores_five(self, matches):
        records = MatchResultRecorder.score_match(matches.singles('alice', 'bob', sets=(2, 0), games=(12, 5)))
        by_entity = {r.entity_id: r for r in records}

        assert by_entity['alice'].match_points == 5
        assert by_entity['alice'].margin == 7
        assert by_entity['bob'].match_points == 1
        assert by_entity['bob'].margin == -7
        assert by_entity['alice'].opponent_id == 'bob'

    def test_three_set_loss_earns_set_point(self, matches):
        records = MatchResultRecorder.score_match(matches.singles('alice', 'bob', sets=(2, 1), games=(15, 13)))
        bob = next(r for r in records if r.entity_id == 'bob')

        assert (bob.participation_points, bob.sets_won_points, bob.win_bonus_points) == (1, 1, 0)
        assert bob.match_points == 2

    def test_sets_won_points_are_capped(self):
        assert score_side(3, True, False) == (1, 2, 2)

    def test_walkover_scores_three_and_one(self, matches):
        records = MatchResultRecorder.score_match(matches.singles('alice', 'bob', is_walkover=True))
        by_entity = {r.entity_id: r for r in records}

        winner, loser = by_entity['alice'], by_entity['bob']
        assert winner.match_points == 3
        assert (winner.sets_won, winner.games_won, winner.margin) == (0, 0, 0)
        assert loser.match_points == 1
        assert winner.walkover_reason == 'no_show'

    def test_doubles_teammates_share_team_totals(self, matches):
        match = matches.doubles(('alice', 'carol'), ('bob', 'dave'), sets=(2, 1), games=(14, 11))
        records = MatchResultRecorder.score_match(match)

        winners = [r for r in records if r.is_win]
        assert {r.entity_id for r in winners} == {'alice', 'carol'}
        assert all(r.match_points == 5 and r.margin == 3 for r in winners)


class TestRecording:
    def test_records_one_row_per_participant(self, database, matches):
        recorder = MatchResultRecorder(database)
        recorded = recorder.record(matches.singles('alice', 'bob'))

        assert len(recorded) == 2
        with database.get_session() as session:
            rows = session.execute(select(MatchResult)).scalars().all()
        assert {row.entity_id for row in rows} == {'alice', 'bob'}

    def test_sequences_increase_per_entity(self, database, matches):
        recorder = MatchResultRecorder(database)
        recorder.record(matches.singles('alice', 'bob'))
        recorder.record(matches.singles('alice', 'carol'))
        third = recorder.record(matches.singles('carol', 'bob'))

        sequences = {r.entity_id: r.result_sequence for r in third}
        assert sequences == {'carol': 2, 'bob': 2}

    def test_late_result_takes_its_place_in_play_order(self, database, matches):
        recorder = MatchResultRecorder(database)
        recorder.record(matches.singles('alice', 'bob', day=10))
        recorder.record(matches.singles('alice', 'carol', day=12))
        recorded = recorder.record(matches.singles('bob', 'alice', day=1))

        assert {r.entity_id: r.result_sequence for r in recorded} == {'alice': 1, 'bob': 1}
        with database.get_session() as session:
            rows = session.execute(
                select(MatchResult).where(MatchResult.entity_id == 'alice').order_by(MatchResult.result_sequence)
            ).scalars().all()
            assert [(row.match_id, row.result_sequence) for row in rows] == [
                ('match-003', 1), ('match-001', 2), ('match-002', 3)
            ]

    def test_doubles_teammates_get_own_sequences(self, database, matches):
        recorder = MatchResultRecorder(database)
        recorder.record(matches.singles('alice', 'bob'))
        recorded = recorder.record(matches.doubles(('alice', 'carol'), ('bob', 'dave')))

        sequences = {r.entity_id: r.result_sequence for r in recorded}
        assert sequences == {'alice': 2, 'carol': 1, 'bob': 2, 'dave': 1}

    def test_duplicate_result_rejected(self, database, matches):
        recorder = MatchResultRecorder(database)
        match = matches.singles('alice', 'bob')
        recorder.record(match)

        with pytest.raises(DuplicateResult):
            recorder.record(match)

    def test_incomplete_match_rejected(self, database, matches):
        recorder = MatchResultRecorder(database)
        with pytest.raises(IncompleteMatch):
            recorder.record(matches.singles('alice', 'bob', status=MatchStatus.ONGOING))

    def test_cancelled_match_records_nothing(self, database, matches):
        recorder = MatchResultRecorder(database)
        match = replace(matches.singles('alice', 'bob'), status=MatchStatus.CANCELLED)

        assert recorder.record(match) == []
        with database.get_session() as session:
            assert not recorder.is_recorded(session, match.match_id)


class TestValidation:
    def test_wrong_participant_count(self, matches):
        match = matches.singles('alice', 'bob')
        crowded = replace(match, participants=match.participants + (Participant('carol', 1, True),))
        with pytest.raises(ValidationError):
            crowded.validate()

    def test_mixed_winner_flags_on_a_team(self, matches):
        match = matches.doubles(('alice', 'carol'), ('bob', 'dave'))
        broken = replace(match, participants=(
            Participant('alice', 1, True), Participant('carol', 1, False),
            Participant('bob', 2, False), Participant('dave', 2, False),
        ))
        with pytest.raises(ValidationError):
            broken.validate()

    def test_duplicated_entity(self, matches):
        match = matches.singles('alice', 'bob')
        with pytest.raises(ValidationError):
            replace(match, participants=(Participant('alice', 1, True), Participant('alice', 2, False))).validate()

    def test_winner_must_win_more_sets(self, matches):
        with pytest.raises(ValidationError):
            matches.singles('alice', 'bob', sets=(0, 2), games=(4, 12)).validate()

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ValidationError):
            FinalizedMatch.from_dict({'match_id': 'm1', 'referee': 'someone'})

    def test_from_dict_rejects_unknown_sport(self, matches):
        payload = {
            'match_id': 'm1', 'division_id': 'd', 'season_id': 's', 'sport_type': 'squash',
            'game_type': 'singles', 'status': 'completed',
            'participants': [{'entity_id': 'a', 'team': 1, 'is_winner': True},
                             {'entity_id': 'b', 'team': 2, 'is_winner': False}],
            'date_played': '2025-03-01T18:00:00Z',
        }
        with pytest.raises(ValidationError):
            FinalizedMatch.from_dict(payload)

    def test_from_dict_parses_payload(self):
        match = FinalizedMatch.from_dict({
            'match_id': 'm1', 'division_id': 'd', 'season_id': 's', 'sport_type': 'pickleball',
            'game_type': 'singles', 'status': 'completed',
            'participants': [{'entity_id': 'a', 'team': 1, 'is_winner': True},
                             {'entity_id': 'b', 'team': 2, 'is_winner': False}],
            'team1': {'sets_won': 2, 'sets_lost': 0, 'games_won': 22, 'games_lost': 10},
            'team2': {'sets_won': 0, 'sets_lost': 2, 'games_won': 10, 'games_lost': 22},
            'date_played': '2025-03-01T18:00:00Z',
        })
        match.validate()
        assert match.created_at == match.date_played
        assert match.winning_team == 1

    def test_from_dict_derives_sides_from_set_scores(self):
        match = FinalizedMatch.from_dict({
            'match_id': 'm1', 'division_id': 'd', 'season_id': 's', 'sport_type': 'padel',
            'game_type': 'singles', 'status': 'completed',
            'participants': [{'entity_id': 'a', 'team': 1, 'is_winner': False},
                             {'entity_id': 'b', 'team': 2, 'is_winner': True}],
            'set_scores': [
                {'set_number': 1, 'team1_games': 6, 'team2_games': 4},
                {'set_number': 2, 'team1_games': 3, 'team2_games': 6},
                {'set_number': 3, 'team1_games': 0, 'team2_games': 0, 'team1_tiebreak': 7, 'team2_tiebreak': 10},
            ],
            'date_played': '2025-03-01T18:00:00Z',
        })
        match.validate()
        assert match.team2.sets_won == 2
        assert (match.team1.games_won, match.team1.games_lost) == (16, 20)

    def test_from_dict_derives_sides_from_pickleball_games(self):
        match = FinalizedMatch.from_dict({
            'match_id': 'm1', 'division_id': 'd', 'season_id': 's', 'sport_type': 'pickleball',
            'game_type': 'singles', 'status': 'completed',
            'participants': [{'entity_id': 'a', 'team': 1, 'is_winner': True},
                             {'entity_id': 'b', 'team': 2, 'is_winner': False}],
            'game_scores': [
                {'game_number': 1, 'team1_points': 11, 'team2_points': 6},
                {'game_number': 2, 'team1_points': 11, 'team2_points': 9},
            ],
            'date_played': '2025-03-01T18:00:00Z',
        })
        match.validate()
        assert match.team1 == SideScore(sets_won=2, sets_lost=0, games_won=22, games_lost=15)

    def test_from_dict_rejects_totals_and_score_lines_together(self):
        with pytest.raises(ValidationError):
            FinalizedMatch.from_dict({
                'match_id': 'm1', 'division_id': 'd', 'season_id': 's', 'sport_type': 'tennis',
                'game_type': 'singles', 'status': 'completed',
                'participants': [{'entity_id': 'a', 'team': 1, 'is_winner': True},
                                 {'entity_id': 'b', 'team': 2, 'is_winner': False}],
                'team1': {'sets_won': 2, 'sets_lost': 0, 'games_won': 12, 'games_lost': 3},
                'set_scores': [{'set_number': 1, 'team1_games': 6, 'team2_games': 1}],
                'date_played': '2025-03-01T18:00:00Z',
            })

    def test_from_dict_rejects_set_scores_for_pickleball(self):
        with pytest.raises(ValidationError):
            FinalizedMatch.from_dict({
                'match_id': 'm1', 'division_id': 'd', 'season_id': 's', 'sport_type': 'pickleball',
                'game_type': 'singles', 'status': 'completed',
                'participants': [{'entity_id': 'a', 'team': 1, 'is_winner': True},
                                 {'entity_id': 'b', 'team': 2, 'is_winner': False}],
                'set_scores': [{'set_number': 1, 'team1_games': 6, 'team2_games': 1}],
                'date_played': '2025-03-01T18:00:00Z',
            })
