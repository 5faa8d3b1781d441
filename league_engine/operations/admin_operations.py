"""
Administrative Operations Module

Entry point for admin commands against the engine. Every command is checked
against the acting admin's permissions, dispatched to the component that owns
the change and recorded in the admin audit log.

Commands:
- GRANT_ADJUSTMENT: manual rating adjustment through the AdjustmentLedger
- SUBMIT_RECALC / PREVIEW_RECALC / APPLY_RECALC: recalculation job lifecycle
- LOCK_SEASON / UNLOCK_SEASON / SET_LOCK_OVERRIDE: season locks
- PUBLISH_PARAMETERS: new rating parameters version

Permission model: the configured owner and superadmins may run everything;
other admins need the command's permission in their JSON permission list.
"""

import json
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from league_engine.config import Config
from league_engine.data_models.admin import AdminCommand, AdminCommandType
from league_engine.database.models import AdminAuditLog, AdminPermissionType
from league_engine.operations.adjustment_ledger import AdjustmentLedger
from league_engine.operations.base import BaseOperations
from league_engine.operations.lock_gate import LockGate
from league_engine.operations.recalculation_coordinator import RecalculationCoordinator
from league_engine.services.rating_parameters import RatingParametersService
from league_engine.utils.exceptions import AdminPermissionError
from league_engine.utils.logger import setup_logger

logger = setup_logger(__name__)


class AdminOperations(BaseOperations):
    """
    Business logic for administrative commands.

    Adjustments, lock changes and job submission run in one transaction with
    their audit entry. Recalculation preview and apply manage their own
    transactions, so their audit entry is written once they succeed.
    """

    def __init__(self, database, ledger: Optional[AdjustmentLedger] = None,
                 coordinator: Optional[RecalculationCoordinator] = None,
                 lock_gate: Optional[LockGate] = None,
                 parameters_service: Optional[RatingParametersService] = None):
        super().__init__(database)
        self.ledger = ledger or AdjustmentLedger(database)
        self.coordinator = coordinator or RecalculationCoordinator(database)
        self.lock_gate = lock_gate or LockGate(database)
        self.parameters_service = parameters_service or RatingParametersService(database.session_factory)
        self._handlers = {
            AdminCommandType.GRANT_ADJUSTMENT: self._grant_adjustment,
            AdminCommandType.SUBMIT_RECALC: self._submit_recalc,
            AdminCommandType.PREVIEW_RECALC: self._preview_recalc,
            AdminCommandType.APPLY_RECALC: self._apply_recalc,
            AdminCommandType.LOCK_SEASON: self._lock_season,
            AdminCommandType.UNLOCK_SEASON: self._unlock_season,
            AdminCommandType.SET_LOCK_OVERRIDE: self._set_lock_override,
            AdminCommandType.PUBLISH_PARAMETERS: self._publish_parameters,
        }

    def handle(self, command: AdminCommand) -> Any:
        """
        Run one admin command.

        Returns:
            The owning component's result for the command

        Raises:
            StateError: If the actor is unknown or inactive
            AdminPermissionError: If the actor lacks the command's permission
        """
        with self._get_session_context() as s:
            self.validate_admin_permissions(s, command.actor, command.required_permission)

        logger.info(f"Admin {command.actor} running {command.type.value} on {command.target}")
        return self._handlers[command.type](command)

    def validate_admin_permissions(self, session: Session, admin_id: str,
                                   required_permission: AdminPermissionType):
        """
        Raise unless the admin may use the permission.

        Raises:
            StateError: If the admin does not exist or is inactive
            AdminPermissionError: If the permission is missing
        """
        admin = self._require_admin(session, admin_id)
        if admin_id == Config.OWNER_ADMIN_ID or admin.is_superadmin:
            return
        try:
            permissions = json.loads(admin.permissions or '[]')
        except json.JSONDecodeError:
            logger.warning(f"Admin {admin_id} has unreadable permissions: {admin.permissions!r}")
            permissions = []
        if required_permission.value not in permissions:
            raise AdminPermissionError(admin_id, required_permission.value)

    def _create_audit_log(self, session: Session, command: AdminCommand, target_type: str,
                          details: Optional[Dict[str, Any]] = None, reason: Optional[str] = None,
                          affected_players_count: int = 0):
        session.add(AdminAuditLog(
            admin_id=command.actor,
            action_type=command.type.value,
            target_type=target_type,
            target_id=command.target,
            details=json.dumps(details or {}, default=str),
            reason=reason,
            affected_players_count=affected_players_count,
        ))
        logger.info(f"Admin audit log created: {command.type.value} by {command.actor} on {target_type}:{command.target}")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _grant_adjustment(self, command: AdminCommand):
        payload = command.payload
        with self._get_session_context() as s:
            record = self.ledger.create(
                payload.player_rating_id, command.actor, payload.adjustment_type,
                payload.new_rating, payload.reason, session=s
            )
            self._create_audit_log(
                s, command, 'player_rating',
                details={
                    'adjustment_id': record.adjustment_id,
                    'adjustment_type': record.adjustment_type.value,
                    'rating_before': record.rating_before,
                    'rating_after': record.rating_after,
                },
                reason=payload.reason,
                affected_players_count=1,
            )
            return record

    def _submit_recalc(self, command: AdminCommand):
        payload = command.payload
        with self._get_session_context() as s:
            result = self.coordinator.submit(
                payload.scope, payload.target_id, payload.season_id, admin_id=command.actor, session=s
            )
            self._create_audit_log(
                s, command, payload.scope.value,
                details={'job_id': result.job_id, 'season_id': payload.season_id},
                reason=payload.reason,
            )
            return result

    def _preview_recalc(self, command: AdminCommand):
        result = self.coordinator.generate_preview(command.payload.job_id)
        with self._get_session_context() as s:
            self._create_audit_log(
                s, command, 'recalculation',
                details={'status': result.status.value, 'summary': result.changes_preview['summary']},
                reason=command.payload.reason,
                affected_players_count=result.affected_players_count,
            )
        return result

    def _apply_recalc(self, command: AdminCommand):
        payload = command.payload
        result = self.coordinator.apply(payload.job_id, allow_override=payload.allow_override)
        with self._get_session_context() as s:
            self._create_audit_log(
                s, command, 'recalculation',
                details={'status': result.status.value, 'allow_override': payload.allow_override},
                reason=payload.reason,
                affected_players_count=result.affected_players_count,
            )
        return result

    def _lock_season(self, command: AdminCommand):
        payload = command.payload
        with self._get_session_context() as s:
            status = self.lock_gate.lock(
                payload.season_id, command.actor, snapshot_reference=payload.snapshot_reference,
                notes=payload.notes, create_snapshot=payload.create_snapshot, session=s
            )
            self._create_audit_log(
                s, command, 'season',
                details={'snapshot_reference': status.snapshot_reference},
                reason=payload.notes,
            )
            return status

    def _unlock_season(self, command: AdminCommand):
        payload = command.payload
        with self._get_session_context() as s:
            status = self.lock_gate.unlock(payload.season_id, command.actor, notes=payload.notes, session=s)
            self._create_audit_log(s, command, 'season', reason=payload.notes)
            return status

    def _set_lock_override(self, command: AdminCommand):
        payload = command.payload
        with self._get_session_context() as s:
            status = self.lock_gate.set_override(payload.season_id, command.actor, payload.allowed, session=s)
            self._create_audit_log(
                s, command, 'season', details={'override_allowed': payload.allowed}, reason=payload.reason
            )
            return status

    def _publish_parameters(self, command: AdminCommand):
        # The parameters service writes its own audit entry
        payload = command.payload
        return self.parameters_service.publish(command.actor, payload.changes.as_dict(), reason=payload.reason)
