"""
Rating parameters service.

Rating parameters are published as numbered versions. Exactly one version is
active; publishing inserts the next version and deactivates the previous one
without editing its values. Every computation reads the active version once
and threads the resulting snapshot through its calls.
"""

import json
import logging
from dataclasses import fields
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from league_engine.constants import RatingDefaults
from league_engine.data_models.ratings import RatingParametersSnapshot
from league_engine.database.models import AdminAuditLog, RatingParameters
from league_engine.services.base import BaseService
from league_engine.utils.exceptions import ConfigurationError, ValidationError
from league_engine.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

PARAMETER_FIELDS = tuple(
    f.name for f in fields(RatingParametersSnapshot) if f.name not in ('version', 'effective_from')
)

DEFAULT_PARAMETERS: Dict[str, Any] = {
    'initial_rating': RatingDefaults.INITIAL_RATING,
    'initial_rd': RatingDefaults.INITIAL_RD,
    'initial_volatility': RatingDefaults.INITIAL_VOLATILITY,
    'k_factor_new': RatingDefaults.K_FACTOR_NEW,
    'k_factor_established': RatingDefaults.K_FACTOR_ESTABLISHED,
    'k_factor_threshold': RatingDefaults.K_FACTOR_THRESHOLD,
    'singles_weight': RatingDefaults.SINGLES_WEIGHT,
    'doubles_weight': RatingDefaults.DOUBLES_WEIGHT,
    'one_set_match_weight': RatingDefaults.ONE_SET_MATCH_WEIGHT,
    'walkover_win_impact': RatingDefaults.WALKOVER_WIN_IMPACT,
    'walkover_loss_impact': RatingDefaults.WALKOVER_LOSS_IMPACT,
    'provisional_threshold': RatingDefaults.PROVISIONAL_THRESHOLD,
    'rating_floor': RatingDefaults.RATING_FLOOR,
    'min_rd': RatingDefaults.MIN_RD,
    'rd_decay': RatingDefaults.RD_DECAY,
}


class RatingParametersService(BaseService):
    """Publishes and reads versioned rating parameters."""

    @contextmanager
    def _get_session_context(self, session: Optional[Session] = None):
        if session is not None:
            yield session
        else:
            with self.get_session() as new_session:
                yield new_session

    def get_active(self, session: Optional[Session] = None) -> RatingParametersSnapshot:
        """
        Snapshot the active parameters version.

        Raises:
            ConfigurationError: If no version is active
        """
        with self._get_session_context(session) as s:
            row = s.execute(
                select(RatingParameters).where(RatingParameters.is_active == True)
            ).scalar_one_or_none()
            if row is None:
                raise ConfigurationError(
                    "No active rating parameters",
                    "Rating parameters have not been configured."
                )
            return RatingParametersSnapshot.from_row(row)

    def seed_defaults(self, session: Optional[Session] = None) -> Optional[RatingParametersSnapshot]:
        """Publish version 1 from the built-in defaults when no version exists yet"""
        with self._get_session_context(session) as s:
            existing = s.execute(select(func.count(RatingParameters.id))).scalar()
            if existing:
                return None
            row = RatingParameters(version=1, is_active=True, effective_from=utc_now(), **DEFAULT_PARAMETERS)
            s.add(row)
            s.flush()
            logger.info("Published default rating parameters as version 1")
            return RatingParametersSnapshot.from_row(row)

    def publish(self, admin_id: str, changes: Dict[str, Any], reason: Optional[str] = None,
                session: Optional[Session] = None) -> RatingParametersSnapshot:
        """
        Publish a new version built from the active one plus the given changes.

        Args:
            admin_id: Admin publishing the version
            changes: Parameter names mapped to new values
            reason: Optional note for the audit log
            session: Optional database session

        Returns:
            Snapshot of the newly active version

        Raises:
            ValidationError: If a name is unknown or a value is out of range
        """
        unknown = set(changes) - set(PARAMETER_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown rating parameters: {', '.join(sorted(unknown))}")

        with self._get_session_context(session) as s:
            current = s.execute(
                select(RatingParameters).where(RatingParameters.is_active == True).with_for_update()
            ).scalar_one_or_none()
            if current is not None:
                values = {name: getattr(current, name) for name in PARAMETER_FIELDS}
            else:
                values = dict(DEFAULT_PARAMETERS)
            values.update(changes)
            self._validate_values(values)

            latest_version = s.execute(select(func.max(RatingParameters.version))).scalar() or 0

            if current is not None:
                current.is_active = False
                # The active index allows one active row; retire the old one first
                s.flush()

            row = RatingParameters(
                version=latest_version + 1,
                is_active=True,
                effective_from=utc_now(),
                created_by_admin=admin_id,
                **values
            )
            s.add(row)
            s.flush()

            s.add(AdminAuditLog(
                admin_id=admin_id,
                action_type='publish_rating_parameters',
                target_type='rating_parameters',
                target_id=str(row.version),
                details=json.dumps({
                    'previous_version': current.version if current is not None else None,
                    'changes': changes,
                }),
                reason=reason,
            ))

            logger.info(f"Published rating parameters version {row.version} by {admin_id}")
            return RatingParametersSnapshot.from_row(row)

    def list_versions(self, session: Optional[Session] = None) -> List[Dict[str, Any]]:
        """Every published version, oldest first"""
        with self._get_session_context(session) as s:
            rows = s.execute(select(RatingParameters).order_by(RatingParameters.version)).scalars().all()
            return [
                {
                    'version': row.version,
                    'is_active': row.is_active,
                    'effective_from': row.effective_from,
                    'created_by_admin': row.created_by_admin,
                    'parameters': {name: getattr(row, name) for name in PARAMETER_FIELDS},
                }
                for row in rows
            ]

    @staticmethod
    def _validate_values(values: Dict[str, Any]):
        for name in ('initial_rating', 'initial_rd', 'k_factor_new', 'k_factor_established', 'min_rd'):
            if values[name] <= 0:
                raise ValidationError(f"{name} must be positive")
        for name in ('k_factor_threshold', 'provisional_threshold', 'rating_floor'):
            if values[name] < 0:
                raise ValidationError(f"{name} cannot be negative")
        for name in ('singles_weight', 'doubles_weight', 'one_set_match_weight',
                     'walkover_win_impact', 'walkover_loss_impact', 'initial_volatility'):
            if values[name] < 0:
                raise ValidationError(f"{name} cannot be negative")
        if not 0 < values['rd_decay'] <= 1:
            raise ValidationError("rd_decay must be in (0, 1]")
        if values['min_rd'] > values['initial_rd']:
            raise ValidationError("min_rd cannot exceed initial_rd")
