"""Tests for manual rating adjustments."""
import pytest
from sqlalchemy import func, select

from league_engine.database.models import (
    AdjustmentType, PlayerRating, RatingChangeReason, RatingHistory
)
from league_engine.operations.adjustment_ledger import AdjustmentLedger
from league_engine.operations.lock_gate import LockGate
from league_engine.operations.rating_engine import RatingEngine
from league_engine.services.match_pipeline import MatchPipeline
from league_engine.utils.exceptions import StateError, ValidationError

from conftest import SEASON, create_admin


@pytest.fixture
def rated_player(database, matches, lock_manager) -> int:
    MatchPipeline(database, lock_manager=lock_manager).handle_match_finalized(matches.singles('alice', 'bob'))
    with database.get_session() as session:
        return session.execute(
            select(PlayerRating.id).where(PlayerRating.player_id == 'alice', PlayerRating.season_id == SEASON)
        ).scalar_one()


def history_count(database) -> int:
    with database.get_session() as session:
        return session.execute(select(func.count(RatingHistory.id))).scalar()


class TestAdjustmentLedger:
    def test_adjustment_sets_rating_and_writes_history(self, database, rated_player, admin):
        record = AdjustmentLedger(database).create(
            rated_player, admin, AdjustmentType.APPEAL_RESOLUTION, 1600, 'Appeal upheld'
        )

        assert (record.rating_before, record.rating_after, record.delta) == (1520, 1600, 80)
        assert record.notified is False

        engine = RatingEngine(database)
        rating = engine.get_player_rating('alice', SEASON)
        assert rating.rating == 1600
        assert rating.peak_rating == 1600
        assert rating.matches_played == 1
        assert rating.is_provisional

        latest = engine.get_rating_history('alice', SEASON)[-1]
        assert latest.history_id == record.rating_history_id
        assert latest.reason == RatingChangeReason.ADJUSTMENT
        assert latest.delta == 80
        assert latest.notes == 'Appeal upheld'

    def test_downward_adjustment_refreshes_lowest(self, database, rated_player, admin):
        AdjustmentLedger(database).create(rated_player, admin, AdjustmentType.CORRECTION, 1400, 'Correction')
        rating = RatingEngine(database).get_player_rating('alice', SEASON)
        assert rating.lowest_rating == 1400
        assert rating.peak_rating == 1520

    def test_migration_adjustment_uses_migration_reason(self, database, rated_player, admin):
        AdjustmentLedger(database).create(rated_player, admin, AdjustmentType.MIGRATION, 1700, 'Imported rating')
        latest = RatingEngine(database).get_rating_history('alice', SEASON)[-1]
        assert latest.reason == RatingChangeReason.MIGRATION

    def test_locked_season_without_override_is_rejected(self, database, rated_player, admin):
        LockGate(database).lock(SEASON, admin)
        before = history_count(database)

        with pytest.raises(StateError):
            AdjustmentLedger(database).create(rated_player, admin, AdjustmentType.ADMIN_OVERRIDE, 1600, 'Late fix')
        assert history_count(database) == before

    def test_locked_season_with_override_writes_one_history_row(self, database, rated_player, admin):
        gate = LockGate(database)
        gate.lock(SEASON, admin)
        gate.set_override(SEASON, admin, True)
        before = history_count(database)

        AdjustmentLedger(database).create(rated_player, admin, AdjustmentType.ADMIN_OVERRIDE, 1600, 'Late fix')
        assert history_count(database) == before + 1

    def test_missing_rating_is_rejected(self, database, admin):
        with pytest.raises(StateError):
            AdjustmentLedger(database).create(999, admin, AdjustmentType.CORRECTION, 1600, 'Nobody')

    def test_inactive_admin_is_rejected(self, database, rated_player):
        retired = create_admin(database, 'retired', is_active=False)
        with pytest.raises(StateError):
            AdjustmentLedger(database).create(rated_player, retired, AdjustmentType.CORRECTION, 1600, 'Fix')

    def test_reason_is_required(self, database, rated_player, admin):
        with pytest.raises(ValidationError):
            AdjustmentLedger(database).create(rated_player, admin, AdjustmentType.CORRECTION, 1600, '  ')

    def test_notification_tracking(self, database, rated_player, admin):
        ledger = AdjustmentLedger(database)
        first = ledger.create(rated_player, admin, AdjustmentType.CORRECTION, 1550, 'First')
        ledger.create(rated_player, admin, AdjustmentType.CORRECTION, 1560, 'Second')

        ledger.mark_notified(first.adjustment_id)

        assert len(ledger.list_for_rating(rated_player)) == 2
        pending = ledger.list_for_rating(rated_player, pending_only=True)
        assert [a.reason for a in pending] == ['Second']
