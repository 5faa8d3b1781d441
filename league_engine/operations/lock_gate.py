"""
Lock Gate Module

Freezes a season once it is finalized. Every writer of match results,
standings and ratings asks assert_writable() before mutating a season. A
locked season rejects all writes unless the lock carries override_allowed and
the write is an admin-triggered recalculation or adjustment.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from league_engine.database.models import DivisionStanding, SeasonLock
from league_engine.operations.base import BaseOperations
from league_engine.services.season_export import SeasonExportService
from league_engine.utils.exceptions import SeasonLockedError, StateError
from league_engine.utils.logger import setup_logger
from league_engine.utils.time_utils import utc_now

logger = setup_logger(__name__)


@dataclass(frozen=True)
class SeasonLockStatus:
    season_id: str
    is_locked: bool
    override_allowed: bool
    locked_by_admin: Optional[str] = None
    locked_at: Optional[datetime] = None
    snapshot_reference: Optional[str] = None
    notes: Optional[str] = None


class LockGate(BaseOperations):
    """Owns season locks and guards every season write."""

    def __init__(self, database, export_service: Optional[SeasonExportService] = None):
        super().__init__(database)
        self.export_service = export_service or SeasonExportService(database.session_factory)

    @staticmethod
    def assert_writable(session: Session, season_id: str, admin_override: bool = False):
        """
        Reject a write to a locked season.

        Args:
            session: Session the write will run in
            season_id: Season being written
            admin_override: True only for admin-triggered recalculations and adjustments

        Raises:
            SeasonLockedError: If the season is locked and the write may not bypass it
        """
        lock = session.get(SeasonLock, season_id)
        if lock is None or not lock.is_locked:
            return
        if admin_override and lock.override_allowed:
            logger.warning(f"Writing to locked season {season_id} under admin override")
            return
        raise SeasonLockedError(season_id)

    @staticmethod
    def is_season_locked(session: Session, season_id: str) -> bool:
        lock = session.get(SeasonLock, season_id)
        return bool(lock and lock.is_locked)

    def lock(self, season_id: str, admin_id: str, snapshot_reference: Optional[str] = None,
             notes: Optional[str] = None, create_snapshot: bool = False,
             session: Optional[Session] = None) -> SeasonLockStatus:
        """
        Lock a season.

        Args:
            season_id: Season to lock
            admin_id: Admin locking the season
            snapshot_reference: Reference to an existing export to attach
            notes: Optional admin notes
            create_snapshot: Take a fresh export snapshot and attach it
            session: Optional database session

        Returns:
            The new lock status

        Raises:
            StateError: If the admin is unknown or the season is already locked
        """
        with self._get_session_context(session) as s:
            self._require_admin(s, admin_id)
            lock = self._get_lock_for_update(s, season_id)
            if lock is not None and lock.is_locked:
                raise StateError(f"Season {season_id} is already locked")
            if lock is None:
                lock = SeasonLock(season_id=season_id)
                s.add(lock)

            if create_snapshot:
                snapshot_reference = self.export_service.create_snapshot(
                    season_id, admin_id, snapshot_type='season_lock',
                    description=f"Snapshot taken when locking season {season_id}", session=s
                )

            lock.is_locked = True
            lock.locked_by_admin = admin_id
            lock.locked_at = utc_now()
            lock.override_allowed = False
            lock.snapshot_reference = snapshot_reference
            lock.notes = notes

            s.execute(
                update(DivisionStanding)
                .where(DivisionStanding.season_id == season_id)
                .values(is_locked=True)
            )
            s.flush()

            logger.info(f"Season {season_id} locked by {admin_id}")
            return self._to_status(lock)

    def unlock(self, season_id: str, admin_id: str, notes: Optional[str] = None,
               session: Optional[Session] = None) -> SeasonLockStatus:
        """
        Unlock a season.

        Raises:
            StateError: If the admin is unknown or the season is not locked
        """
        with self._get_session_context(session) as s:
            self._require_admin(s, admin_id)
            lock = self._get_lock_for_update(s, season_id)
            if lock is None or not lock.is_locked:
                raise StateError(f"Season {season_id} is not locked")

            lock.is_locked = False
            lock.override_allowed = False
            lock.unlocked_by_admin = admin_id
            lock.unlocked_at = utc_now()
            if notes:
                lock.notes = notes

            s.execute(
                update(DivisionStanding)
                .where(DivisionStanding.season_id == season_id)
                .values(is_locked=False)
            )
            s.flush()

            logger.info(f"Season {season_id} unlocked by {admin_id}")
            return self._to_status(lock)

    def set_override(self, season_id: str, admin_id: str, allowed: bool,
                     session: Optional[Session] = None) -> SeasonLockStatus:
        """
        Allow or forbid admin-triggered writes to a locked season.

        Raises:
            StateError: If the admin is unknown or the season is not locked
        """
        with self._get_session_context(session) as s:
            self._require_admin(s, admin_id)
            lock = self._get_lock_for_update(s, season_id)
            if lock is None or not lock.is_locked:
                raise StateError(f"Season {season_id} is not locked; overrides apply to locked seasons only")
            lock.override_allowed = allowed
            s.flush()

            logger.info(f"Season {season_id} override {'allowed' if allowed else 'revoked'} by {admin_id}")
            return self._to_status(lock)

    def get_status(self, season_id: str, session: Optional[Session] = None) -> SeasonLockStatus:
        with self._get_session_context(session) as s:
            lock = s.get(SeasonLock, season_id)
            if lock is None:
                return SeasonLockStatus(season_id=season_id, is_locked=False, override_allowed=False)
            return self._to_status(lock)

    @staticmethod
    def _get_lock_for_update(session: Session, season_id: str) -> Optional[SeasonLock]:
        return session.execute(
            select(SeasonLock).where(SeasonLock.season_id == season_id).with_for_update()
        ).scalar_one_or_none()

    @staticmethod
    def _to_status(lock: SeasonLock) -> SeasonLockStatus:
        return SeasonLockStatus(
            season_id=lock.season_id,
            is_locked=lock.is_locked,
            override_allowed=lock.override_allowed,
            locked_by_admin=lock.locked_by_admin,
            locked_at=lock.locked_at,
            snapshot_reference=lock.snapshot_reference,
            notes=lock.notes,
        )
