"""Tests for recalculation jobs: closure, preview, apply and failure handling."""
import pytest
from sqlalchemy import select

from league_engine.database.models import (
    AdjustmentType, DivisionStanding, MatchResult, PlayerRating, RatingAdjustment, RatingHistory,
    RecalculationScope, RecalculationStatus
)
from league_engine.operations.adjustment_ledger import AdjustmentLedger
from league_engine.operations.lock_gate import LockGate
from league_engine.operations.rating_engine import RatingEngine
from league_engine.operations.recalculation_coordinator import RecalculationCoordinator
from league_engine.operations.standings_aggregator import StandingsAggregator
from league_engine.services.match_pipeline import MatchPipeline
from league_engine.services.rating_parameters import RatingParametersService
from league_engine.utils.exceptions import (
    ConflictError, ConsistencyError, RecalculationTimeout, SeasonLockedError, StateError, ValidationError
)
from league_engine.utils.selection_policies import SelectionPolicy

from conftest import DIVISION, SEASON

PLAYERS = [f"p{i}" for i in range(1, 9)]


@pytest.fixture
def pipeline(database, lock_manager) -> MatchPipeline:
    return MatchPipeline(database, lock_manager=lock_manager)


@pytest.fixture
def division_season(pipeline, matches):
    """Eight players, each with four results in one division."""
    for offset in (1, 3):
        for i, player in enumerate(PLAYERS):
            opponent = PLAYERS[(i + offset) % len(PLAYERS)]
            if offset == 3 and i % 2:
                pipeline.handle_match_finalized(matches.singles(opponent, player, sets=(2, 1), games=(13, 12)))
            else:
                pipeline.handle_match_finalized(matches.singles(player, opponent))
    # A second division for one of the players
    pipeline.handle_match_finalized(matches.singles('p1', 'q1', division_id='div-b'))
    return PLAYERS


def top_two_coordinator(database, lock_manager, **kwargs) -> RecalculationCoordinator:
    aggregator = StandingsAggregator(database, policy=SelectionPolicy.TOP_K_BY_POINTS, k=2)
    return RecalculationCoordinator(database, aggregator=aggregator, lock_manager=lock_manager,
                                    max_workers=2, **kwargs)


def live_state(database):
    with database.get_session() as session:
        standings = {
            (row.division_id, row.entity_id): (row.rank, row.total_points, row.counted_matches)
            for row in session.execute(select(DivisionStanding)).scalars()
        }
        flags = {
            (row.match_id, row.entity_id): (row.result_sequence, row.counts_for_standings)
            for row in session.execute(select(MatchResult)).scalars()
        }
        ratings = {
            row.player_id: (row.current_rating, row.rating_deviation, row.matches_played)
            for row in session.execute(select(PlayerRating)).scalars()
        }
        history = session.execute(
            select(RatingHistory.id, RatingHistory.superseded_at).order_by(RatingHistory.id)
        ).all()
    return standings, flags, ratings, [tuple(h) for h in history]


class TestSubmit:
    def test_submit_creates_pending_job(self, database, division_season, lock_manager, admin):
        coordinator = top_two_coordinator(database, lock_manager)
        result = coordinator.submit(RecalculationScope.DIVISION, DIVISION, SEASON, admin_id=admin)

        assert result.status == RecalculationStatus.PENDING
        assert result.changes_preview is None
        assert coordinator.get_result(result.job_id).status == RecalculationStatus.PENDING

    def test_second_open_job_conflicts(self, database, division_season, lock_manager, admin):
        coordinator = top_two_coordinator(database, lock_manager)
        first = coordinator.submit(RecalculationScope.DIVISION, DIVISION, SEASON, admin_id=admin)

        with pytest.raises(ConflictError) as exc_info:
            coordinator.submit(RecalculationScope.DIVISION, DIVISION, SEASON, admin_id=admin)
        assert exc_info.value.existing_job_id == first.job_id

    def test_closed_job_allows_resubmission(self, database, division_season, lock_manager, admin):
        coordinator = top_two_coordinator(database, lock_manager)
        job = coordinator.submit(RecalculationScope.PLAYER, 'p3', SEASON, admin_id=admin)
        coordinator.generate_preview(job.job_id)
        coordinator.apply(job.job_id)

        again = coordinator.submit(RecalculationScope.PLAYER, 'p3', SEASON, admin_id=admin)
        assert again.job_id != job.job_id

    def test_unknown_target_rejected(self, database, division_season, lock_manager):
        coordinator = top_two_coordinator(database, lock_manager)
        with pytest.raises(ValidationError):
            coordinator.submit(RecalculationScope.MATCH, 'no-such-match', SEASON)


class TestPreview:
    def test_division_preview_covers_every_entity(self, database, division_season, lock_manager, admin):
        coordinator = top_two_coordinator(database, lock_manager)
        job = coordinator.submit(RecalculationScope.DIVISION, DIVISION, SEASON, admin_id=admin)
        before = live_state(database)

        result = coordinator.generate_preview(job.job_id)

        assert result.status == RecalculationStatus.PREVIEW_READY
        assert result.affected_players_count == 8
        assert len(result.changes_preview['entities']) == 8
        assert [e['entity_id'] for e in result.changes_preview['entities']] == sorted(PLAYERS)
        assert result.changes_preview['divisions'] == [DIVISION, 'div-b']
        assert result.changes_preview['summary']['entities_changed'] > 0
        assert live_state(database) == before

    def test_match_scope_covers_participants(self, database, division_season, lock_manager):
        coordinator = top_two_coordinator(database, lock_manager)
        job = coordinator.submit(RecalculationScope.MATCH, 'match-001', SEASON)

        result = coordinator.generate_preview(job.job_id)
        assert result.affected_players_count == 2
        assert {e['entity_id'] for e in result.changes_preview['entities']} == {'p1', 'p2'}

    def test_preview_can_be_regenerated(self, database, division_season, lock_manager):
        coordinator = top_two_coordinator(database, lock_manager)
        job = coordinator.submit(RecalculationScope.PLAYER, 'p1', SEASON)

        first = coordinator.generate_preview(job.job_id)
        second = coordinator.generate_preview(job.job_id)
        assert first.changes_preview == second.changes_preview

    def test_timeout_fails_job(self, database, division_season, lock_manager):
        coordinator = top_two_coordinator(database, lock_manager, timeout_seconds=1e-9)
        job = coordinator.submit(RecalculationScope.SEASON, SEASON, SEASON)

        with pytest.raises(RecalculationTimeout):
            coordinator.generate_preview(job.job_id)

        result = coordinator.get_result(job.job_id)
        assert result.status == RecalculationStatus.FAILED
        assert 'RecalculationTimeout' in result.error_message


class TestApply:
    def test_apply_writes_replayed_state(self, database, division_season, lock_manager, admin):
        coordinator = top_two_coordinator(database, lock_manager)
        job = coordinator.submit(RecalculationScope.DIVISION, DIVISION, SEASON, admin_id=admin)
        preview = coordinator.generate_preview(job.job_id)

        result = coordinator.apply(job.job_id)

        assert result.status == RecalculationStatus.APPLIED
        assert result.applied_at is not None
        aggregator = StandingsAggregator(database)
        for entry in preview.changes_preview['entities']:
            for change in entry['standings']:
                snapshot = next(
                    s for s in aggregator.get_division_standings(change['division_id'], SEASON)
                    if s.entity_id == entry['entity_id']
                )
                assert snapshot.total_points == change['after']['total_points']
                assert snapshot.rank == change['after']['rank']
        for entity_id in PLAYERS:
            counted = aggregator.get_counted_results(entity_id, DIVISION, SEASON)
            assert len(counted) <= 2

    def test_apply_supersedes_history(self, database, division_season, lock_manager, admin):
        RatingParametersService(database.session_factory).publish(admin, {'k_factor_new': 32})
        coordinator = top_two_coordinator(database, lock_manager)
        job = coordinator.submit(RecalculationScope.PLAYER, 'p1', SEASON, admin_id=admin)
        preview = coordinator.generate_preview(job.job_id)
        old_history = RatingEngine(database).get_rating_history('p1', SEASON)

        coordinator.apply(job.job_id)

        engine = RatingEngine(database)
        new_history = engine.get_rating_history('p1', SEASON)
        full_history = engine.get_rating_history('p1', SEASON, include_superseded=True)
        assert len(new_history) == len(old_history)
        assert len(full_history) == 2 * len(old_history)
        assert all(h.parameters_version == 2 for h in new_history)
        rating = engine.get_player_rating('p1', SEASON)
        assert rating.rating == preview.changes_preview['entities'][0]['rating']['after']['rating']
        assert rating.rating != old_history[-1].rating_after

    def test_failure_leaves_live_state_untouched(self, database, division_season, lock_manager, admin):
        coordinator = top_two_coordinator(database, lock_manager)
        job = coordinator.submit(RecalculationScope.DIVISION, DIVISION, SEASON, admin_id=admin)
        coordinator.generate_preview(job.job_id)
        before = live_state(database)

        def broken_write(*args, **kwargs):
            raise RuntimeError("disk full")
        coordinator._write_ratings = broken_write

        with pytest.raises(RuntimeError):
            coordinator.apply(job.job_id)

        assert live_state(database) == before
        result = coordinator.get_result(job.job_id)
        assert result.status == RecalculationStatus.FAILED
        assert result.failed_at is not None
        assert 'disk full' in result.error_message

    def test_apply_requires_preview(self, database, division_season, lock_manager):
        coordinator = top_two_coordinator(database, lock_manager)
        job = coordinator.submit(RecalculationScope.PLAYER, 'p2', SEASON)

        with pytest.raises(StateError):
            coordinator.apply(job.job_id)
        assert coordinator.get_result(job.job_id).status == RecalculationStatus.PENDING

    def test_applied_job_cannot_be_reapplied(self, database, division_season, lock_manager):
        coordinator = top_two_coordinator(database, lock_manager)
        job = coordinator.submit(RecalculationScope.PLAYER, 'p2', SEASON)
        coordinator.generate_preview(job.job_id)
        coordinator.apply(job.job_id)

        with pytest.raises(StateError):
            coordinator.apply(job.job_id)
        with pytest.raises(StateError):
            coordinator.generate_preview(job.job_id)
        assert coordinator.get_result(job.job_id).status == RecalculationStatus.APPLIED

    def test_new_results_after_preview_are_inconsistent(self, database, division_season, lock_manager,
                                                        pipeline, matches):
        coordinator = top_two_coordinator(database, lock_manager)
        job = coordinator.submit(RecalculationScope.DIVISION, DIVISION, SEASON)
        coordinator.generate_preview(job.job_id)
        pipeline.handle_match_finalized(matches.singles('p4', 'p8'))
        before = live_state(database)

        with pytest.raises(ConsistencyError):
            coordinator.apply(job.job_id)
        assert live_state(database) == before
        assert coordinator.get_result(job.job_id).status == RecalculationStatus.FAILED

    def test_parameters_published_after_preview_are_inconsistent(self, database, division_season,
                                                                 lock_manager, admin):
        coordinator = top_two_coordinator(database, lock_manager)
        job = coordinator.submit(RecalculationScope.PLAYER, 'p5', SEASON)
        coordinator.generate_preview(job.job_id)
        RatingParametersService(database.session_factory).publish(admin, {'k_factor_new': 36})

        with pytest.raises(ConsistencyError):
            coordinator.apply(job.job_id)

    def test_locked_season_needs_override(self, database, division_season, lock_manager, admin):
        coordinator = top_two_coordinator(database, lock_manager)
        gate = LockGate(database)

        job = coordinator.submit(RecalculationScope.PLAYER, 'p6', SEASON)
        coordinator.generate_preview(job.job_id)
        gate.lock(SEASON, admin)
        with pytest.raises(SeasonLockedError):
            coordinator.apply(job.job_id, allow_override=True)
        assert coordinator.get_result(job.job_id).status == RecalculationStatus.FAILED

        gate.set_override(SEASON, admin, True)
        retry = coordinator.submit(RecalculationScope.PLAYER, 'p6', SEASON)
        coordinator.generate_preview(retry.job_id)
        with pytest.raises(SeasonLockedError):
            coordinator.apply(retry.job_id)

        third = coordinator.submit(RecalculationScope.PLAYER, 'p6', SEASON)
        coordinator.generate_preview(third.job_id)
        assert coordinator.apply(third.job_id, allow_override=True).status == RecalculationStatus.APPLIED

    def test_adjustments_survive_replay(self, database, division_season, lock_manager, admin):
        engine = RatingEngine(database)
        with database.get_session() as session:
            rating_id = session.execute(
                select(PlayerRating.id).where(PlayerRating.player_id == 'p7', PlayerRating.season_id == SEASON)
            ).scalar_one()
        current = engine.get_player_rating('p7', SEASON).rating
        adjustment = AdjustmentLedger(database).create(
            rating_id, admin, AdjustmentType.CORRECTION, current + 40, 'Score entered wrong'
        )

        coordinator = RecalculationCoordinator(database, lock_manager=lock_manager)
        job = coordinator.submit(RecalculationScope.SEASON, SEASON, SEASON, admin_id=admin)
        preview = coordinator.generate_preview(job.job_id)
        p7 = next(e for e in preview.changes_preview['entities'] if e['entity_id'] == 'p7')
        assert p7['changed'] is False

        coordinator.apply(job.job_id)

        assert engine.get_player_rating('p7', SEASON).rating == current + 40
        with database.get_session() as session:
            stored = session.get(RatingAdjustment, adjustment.adjustment_id)
            linked = session.get(RatingHistory, stored.rating_history_id)
            assert linked.recalculation_id == job.job_id
            assert linked.superseded_at is None
            assert linked.delta == 40

    def test_replayed_adjustment_never_drops_below_floor(self, database, division_season, lock_manager, admin):
        engine = RatingEngine(database)
        with database.get_session() as session:
            rating_id = session.execute(
                select(PlayerRating.id).where(PlayerRating.player_id == 'p7', PlayerRating.season_id == SEASON)
            ).scalar_one()
        AdjustmentLedger(database).create(rating_id, admin, AdjustmentType.CORRECTION, 100, 'Sandbagging')
        params = RatingParametersService(database.session_factory).publish(admin, {'initial_rating': 1000})

        coordinator = RecalculationCoordinator(database, lock_manager=lock_manager)
        job = coordinator.submit(RecalculationScope.PLAYER, 'p7', SEASON, admin_id=admin)
        coordinator.generate_preview(job.job_id)
        coordinator.apply(job.job_id)

        state = engine.get_player_rating('p7', SEASON)
        assert state.rating == params.rating_floor
        assert state.lowest_rating == params.rating_floor
        assert all(h.rating_after >= params.rating_floor for h in engine.get_rating_history('p7', SEASON))
