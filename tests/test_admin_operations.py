"""Tests for admin command dispatch, permissions and auditing."""
import json
from dataclasses import fields

import pytest
from sqlalchemy import select

from league_engine.config import Config
from league_engine.constants import RatingDefaults
from league_engine.data_models.admin import (
    AdminCommand, AdminCommandType, GrantAdjustmentPayload, LockOverridePayload, LockSeasonPayload,
    PublishParametersPayload, RatingParameterChanges, RecalcJobPayload, SubmitRecalcPayload, UnlockSeasonPayload
)
from league_engine.database.models import (
    AdjustmentType, AdminAuditLog, AdminPermissionType, PlayerRating, RecalculationScope, RecalculationStatus
)
from league_engine.operations.admin_operations import AdminOperations
from league_engine.operations.recalculation_coordinator import RecalculationCoordinator
from league_engine.services.match_pipeline import MatchPipeline
from league_engine.services.rating_parameters import PARAMETER_FIELDS
from league_engine.utils.exceptions import AdminPermissionError, StateError, ValidationError

from conftest import SEASON, create_admin


@pytest.fixture
def operations(database, lock_manager) -> AdminOperations:
    coordinator = RecalculationCoordinator(database, lock_manager=lock_manager)
    return AdminOperations(database, coordinator=coordinator)


@pytest.fixture
def played(database, matches, lock_manager):
    pipeline = MatchPipeline(database, lock_manager=lock_manager)
    pipeline.handle_match_finalized(matches.singles('alice', 'bob'))
    pipeline.handle_match_finalized(matches.singles('bob', 'carol'))


def audit_actions(database):
    with database.get_session() as session:
        return [
            (row.action_type, row.admin_id, row.target_id)
            for row in session.execute(select(AdminAuditLog).order_by(AdminAuditLog.id)).scalars()
        ]


class TestAdminCommand:
    def test_payload_must_match_type(self):
        with pytest.raises(ValidationError):
            AdminCommand(AdminCommandType.LOCK_SEASON, 'admin-1', UnlockSeasonPayload(season_id=SEASON))

    def test_target_and_permission(self):
        command = AdminCommand(AdminCommandType.APPLY_RECALC, 'admin-1', RecalcJobPayload(job_id=7))
        assert command.target == '7'
        assert command.required_permission == AdminPermissionType.RECALCULATE

    def test_parameter_changes_only_carry_set_fields(self):
        changes = RatingParameterChanges(k_factor_new=30, rating_floor=200)
        assert changes.as_dict() == {'k_factor_new': 30, 'rating_floor': 200}
        assert RatingParameterChanges().as_dict() == {}

    def test_parameter_changes_cover_every_parameter(self):
        assert set(f.name for f in fields(RatingParameterChanges)) == set(PARAMETER_FIELDS)


class TestPermissions:
    def test_listed_permission_is_enough(self, database, operations):
        locker = create_admin(database, 'locker', permissions=[AdminPermissionType.LOCK_SEASONS.value])
        status = operations.handle(AdminCommand(AdminCommandType.LOCK_SEASON, locker, LockSeasonPayload(SEASON)))
        assert status.is_locked

    def test_missing_permission_is_rejected(self, database, operations):
        locker = create_admin(database, 'locker', permissions=[AdminPermissionType.LOCK_SEASONS.value])
        command = AdminCommand(AdminCommandType.PUBLISH_PARAMETERS, locker,
                               PublishParametersPayload(changes=RatingParameterChanges(k_factor_new=30)))
        with pytest.raises(AdminPermissionError):
            operations.handle(command)
        assert audit_actions(database) == []

    def test_owner_bypasses_permission_list(self, database, operations, monkeypatch):
        owner = create_admin(database, 'owner')
        monkeypatch.setattr(Config, 'OWNER_ADMIN_ID', owner)
        status = operations.handle(AdminCommand(AdminCommandType.LOCK_SEASON, owner, LockSeasonPayload(SEASON)))
        assert status.is_locked

    def test_unknown_actor_is_rejected(self, operations):
        with pytest.raises(StateError):
            operations.handle(AdminCommand(AdminCommandType.LOCK_SEASON, 'ghost', LockSeasonPayload(SEASON)))


class TestDispatch:
    def test_season_lock_commands_are_audited(self, database, operations, admin):
        operations.handle(AdminCommand(AdminCommandType.LOCK_SEASON, admin, LockSeasonPayload(SEASON, notes='Done')))
        operations.handle(AdminCommand(AdminCommandType.SET_LOCK_OVERRIDE, admin, LockOverridePayload(SEASON, True)))
        status = operations.handle(AdminCommand(AdminCommandType.UNLOCK_SEASON, admin, UnlockSeasonPayload(SEASON)))

        assert status.is_locked is False
        assert audit_actions(database) == [
            ('lock_season', admin, SEASON),
            ('set_lock_override', admin, SEASON),
            ('unlock_season', admin, SEASON),
        ]

    def test_grant_adjustment(self, database, operations, admin, played):
        with database.get_session() as session:
            rating_id = session.execute(
                select(PlayerRating.id).where(PlayerRating.player_id == 'carol')
            ).scalar_one()

        record = operations.handle(AdminCommand(
            AdminCommandType.GRANT_ADJUSTMENT, admin,
            GrantAdjustmentPayload(rating_id, AdjustmentType.CORRECTION, 1500, 'Wrong winner entered')
        ))
        assert record.rating_after == 1500

        with database.get_session() as session:
            entry = session.execute(select(AdminAuditLog)).scalar_one()
        assert entry.affected_players_count == 1
        assert json.loads(entry.details)['adjustment_id'] == record.adjustment_id

    def test_recalculation_lifecycle(self, database, operations, admin, played):
        submitted = operations.handle(AdminCommand(
            AdminCommandType.SUBMIT_RECALC, admin,
            SubmitRecalcPayload(RecalculationScope.SEASON, SEASON, SEASON, reason='Audit')
        ))
        previewed = operations.handle(AdminCommand(
            AdminCommandType.PREVIEW_RECALC, admin, RecalcJobPayload(submitted.job_id)
        ))
        applied = operations.handle(AdminCommand(
            AdminCommandType.APPLY_RECALC, admin, RecalcJobPayload(submitted.job_id)
        ))

        assert previewed.affected_players_count == 3
        assert applied.status == RecalculationStatus.APPLIED
        assert [action for action, _, _ in audit_actions(database)] == [
            'submit_recalc', 'preview_recalc', 'apply_recalc'
        ]

    def test_publish_parameters(self, database, operations, admin):
        snapshot = operations.handle(AdminCommand(
            AdminCommandType.PUBLISH_PARAMETERS, admin,
            PublishParametersPayload(changes=RatingParameterChanges(one_set_match_weight=0.75),
                                     reason='Short format rule')
        ))
        assert snapshot.version == 2
        assert snapshot.one_set_match_weight == 0.75
        assert snapshot.k_factor_new == RatingDefaults.K_FACTOR_NEW
        assert audit_actions(database) == [('publish_rating_parameters', admin, '2')]
