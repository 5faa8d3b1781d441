"""
Adjustment Ledger Module

Manual rating corrections that do not come from match replay. Each
adjustment writes a RatingAdjustment paired 1:1 with a RatingHistory row and
moves the player's current rating directly. Recalculation replays recorded
adjustments as their relative delta.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from league_engine.data_models.ratings import RatingState
from league_engine.database.models import (
    AdjustmentType, PlayerRating, RatingAdjustment, RatingChangeReason, RatingHistory
)
from league_engine.operations.base import BaseOperations
from league_engine.operations.lock_gate import LockGate
from league_engine.utils.exceptions import StateError, ValidationError
from league_engine.utils.logger import setup_logger
from league_engine.utils.time_utils import utc_now

logger = setup_logger(__name__)


@dataclass(frozen=True)
class AdjustmentRecord:
    adjustment_id: int
    player_rating_id: int
    rating_history_id: int
    admin_id: str
    adjustment_type: AdjustmentType
    rating_before: int
    rating_after: int
    delta: int
    reason: str
    notified: bool
    created_at: datetime

    @classmethod
    def from_row(cls, row: RatingAdjustment) -> 'AdjustmentRecord':
        return cls(
            adjustment_id=row.id,
            player_rating_id=row.player_rating_id,
            rating_history_id=row.rating_history_id,
            admin_id=row.admin_id,
            adjustment_type=row.adjustment_type,
            rating_before=row.rating_before,
            rating_after=row.rating_after,
            delta=row.delta,
            reason=row.reason,
            notified=row.notified,
            created_at=row.created_at,
        )


class AdjustmentLedger(BaseOperations):
    """Records manual rating adjustments."""

    def create(self, player_rating_id: int, admin_id: str, adjustment_type: AdjustmentType,
               new_rating: int, reason: str, session: Optional[Session] = None) -> AdjustmentRecord:
        """
        Set a player's rating to a new value and record why.

        Matches played and the provisional flag are left untouched.

        Args:
            player_rating_id: PlayerRating row to adjust
            admin_id: Admin granting the adjustment
            adjustment_type: Kind of adjustment
            new_rating: Rating after the adjustment
            reason: Required explanation
            session: Optional database session

        Returns:
            AdjustmentRecord of the stored adjustment

        Raises:
            ValidationError: If the reason is empty or the rating is not positive
            StateError: If the rating or admin does not exist, or the season is
                locked without override
        """
        adjustment_type = AdjustmentType(adjustment_type)
        if not reason or not reason.strip():
            raise ValidationError("An adjustment needs a reason")
        if new_rating <= 0:
            raise ValidationError(f"Rating must be positive, got {new_rating}")

        with self._get_session_context(session) as s:
            self._require_admin(s, admin_id)
            rating = s.execute(
                select(PlayerRating).where(PlayerRating.id == player_rating_id).with_for_update()
            ).scalar_one_or_none()
            if rating is None:
                raise StateError(f"Player rating {player_rating_id} does not exist")
            LockGate.assert_writable(s, rating.season_id, admin_override=True)

            now = utc_now()
            before = RatingState.from_row(rating)
            after = before.with_rating(new_rating, now)
            delta = after.rating - before.rating

            history = RatingHistory(
                player_rating_id=rating.id,
                rating_before=before.rating,
                rating_after=after.rating,
                delta=delta,
                rd_before=before.rating_deviation,
                rd_after=after.rating_deviation,
                reason=(RatingChangeReason.MIGRATION if adjustment_type == AdjustmentType.MIGRATION
                        else RatingChangeReason.ADJUSTMENT),
                notes=reason,
                effective_at=now,
            )
            s.add(history)
            s.flush()

            adjustment = RatingAdjustment(
                player_rating_id=rating.id,
                admin_id=admin_id,
                rating_history_id=history.id,
                adjustment_type=adjustment_type,
                rating_before=before.rating,
                rating_after=after.rating,
                delta=delta,
                reason=reason,
                notified=False,
                created_at=now,
            )
            s.add(adjustment)
            after.write_to(rating)
            s.flush()

            logger.info(
                f"Adjusted {rating.player_id} in season {rating.season_id}: "
                f"{before.rating} -> {after.rating} ({adjustment_type.value}) by {admin_id}"
            )
            return AdjustmentRecord.from_row(adjustment)

    def mark_notified(self, adjustment_id: int, session: Optional[Session] = None) -> AdjustmentRecord:
        with self._get_session_context(session) as s:
            adjustment = s.get(RatingAdjustment, adjustment_id)
            if adjustment is None:
                raise ValidationError(f"Adjustment {adjustment_id} not found")
            adjustment.notified = True
            s.flush()
            return AdjustmentRecord.from_row(adjustment)

    def list_for_rating(self, player_rating_id: int, pending_only: bool = False,
                        session: Optional[Session] = None) -> List[AdjustmentRecord]:
        """Adjustments of one player rating, oldest first; pending_only limits to un-notified ones"""
        with self._get_session_context(session) as s:
            query = (
                select(RatingAdjustment)
                .where(RatingAdjustment.player_rating_id == player_rating_id)
                .order_by(RatingAdjustment.id)
            )
            if pending_only:
                query = query.where(RatingAdjustment.notified == False)
            return [AdjustmentRecord.from_row(row) for row in s.execute(query).scalars().all()]
