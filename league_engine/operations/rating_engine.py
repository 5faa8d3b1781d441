"""
Rating Engine Module

Maintains one rating per player per season from the recorded result stream.

Every rated match moves each participant by
    round(K x format weight x walkover impact x (actual - expected))
clamped at the rating floor, shrinks the rating deviation toward its floor,
and appends an immutable RatingHistory row.

The calculation itself lives in RatingCalculator.rate_match and is shared
with recalculation replay; this module only loads and stores state.
"""

from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from league_engine.data_models.ratings import (
    RatingChange, RatingHistoryEntry, RatingParametersSnapshot, RatingState
)
from league_engine.data_models.standings import ResultRecord
from league_engine.database.models import (
    AdjustmentType, MatchResult, PlayerRating, RatingAdjustment, RatingChangeReason, RatingHistory
)
from league_engine.operations.base import BaseOperations
from league_engine.operations.lock_gate import LockGate
from league_engine.operations.season_replay import AdjustmentEvent, SeasonReplay
from league_engine.services.rating_parameters import RatingParametersService
from league_engine.utils.exceptions import StateError, ValidationError
from league_engine.utils.logger import setup_logger
from league_engine.utils.rating_math import RatedMatch, RatingCalculator
from league_engine.utils.time_utils import utc_now

logger = setup_logger(__name__)


def build_history_row(change: RatingChange, player_rating_id: int, parameters_version: Optional[int],
                      recalculation_id: Optional[int] = None) -> RatingHistory:
    return RatingHistory(
        player_rating_id=player_rating_id,
        match_id=change.match_id,
        rating_before=change.before.rating,
        rating_after=change.after.rating,
        delta=change.delta,
        rd_before=change.before.rating_deviation,
        rd_after=change.after.rating_deviation,
        reason=change.reason,
        notes=change.notes,
        parameters_version=parameters_version,
        recalculation_id=recalculation_id,
        effective_at=change.effective_at,
    )


def load_adjustment_events(session: Session, season_id: str) -> List[AdjustmentEvent]:
    """Every manual adjustment of a season as replayable events, oldest first"""
    rows = session.execute(
        select(RatingAdjustment, PlayerRating.player_id)
        .join(PlayerRating, RatingAdjustment.player_rating_id == PlayerRating.id)
        .where(PlayerRating.season_id == season_id)
        .order_by(RatingAdjustment.id)
    ).all()
    return [
        AdjustmentEvent(
            adjustment_id=adjustment.id,
            player_id=player_id,
            delta=adjustment.delta,
            reason=(RatingChangeReason.MIGRATION if adjustment.adjustment_type == AdjustmentType.MIGRATION
                    else RatingChangeReason.ADJUSTMENT),
            effective_at=adjustment.created_at,
            notes=adjustment.reason,
        )
        for adjustment, player_id in rows
    ]


class RatingEngine(BaseOperations):
    """Rates recorded matches and serves rating history."""

    def __init__(self, database, parameters_service: Optional[RatingParametersService] = None):
        super().__init__(database)
        self.parameters_service = parameters_service or RatingParametersService(database.session_factory)

    @staticmethod
    def get_or_create_rating(session: Session, player_id: str, season_id: str,
                             params: RatingParametersSnapshot) -> PlayerRating:
        """Load a player's season rating for update, creating it from the parameters if missing"""
        row = session.execute(
            select(PlayerRating)
            .where(PlayerRating.player_id == player_id, PlayerRating.season_id == season_id)
            .with_for_update()
        ).scalar_one_or_none()
        if row is None:
            row = PlayerRating(player_id=player_id, season_id=season_id)
            RatingState.initial(player_id, params).write_to(row)
            session.add(row)
            session.flush()
            logger.debug(f"Created rating for {player_id} in season {season_id} at {params.initial_rating}")
        return row

    def apply_match(self, match_id: str, params: Optional[RatingParametersSnapshot] = None,
                    admin_override: bool = False, session: Optional[Session] = None) -> List[RatingChange]:
        """
        Rate one recorded match.

        Args:
            match_id: Match whose results are already recorded
            params: Parameters snapshot; read from the active version when omitted
            admin_override: True for admin-triggered writes to a locked season
            session: Optional database session

        Returns:
            The applied rating changes

        Raises:
            ConfigurationError: If no parameters version is active
            SeasonLockedError: If the season is locked and no override applies
            ValidationError: If the match has no usable results
            StateError: If the match has already been rated
        """
        with self._get_session_context(session) as s:
            if params is None:
                params = self.parameters_service.get_active(s)

            results = [
                ResultRecord.from_row(row) for row in s.execute(
                    select(MatchResult).where(MatchResult.match_id == match_id)
                ).scalars().all()
            ]
            if not results:
                raise ValidationError(f"Match {match_id} has no recorded results")
            season_id = results[0].season_id
            LockGate.assert_writable(s, season_id, admin_override)

            already_rated = s.execute(
                select(func.count(RatingHistory.id)).where(
                    RatingHistory.match_id == match_id,
                    RatingHistory.superseded_at.is_(None),
                )
            ).scalar()
            if already_rated:
                raise StateError(f"Match {match_id} has already been rated")

            rated = RatedMatch.from_results(results)
            if self.arrived_out_of_order(s, rated):
                return self._rerate_season_tail(s, rated, params)

            rows: Dict[str, PlayerRating] = {
                player_id: self.get_or_create_rating(s, player_id, season_id, params)
                for player_id in sorted(rated.players)
            }
            states = {player_id: RatingState.from_row(row) for player_id, row in rows.items()}

            changes = RatingCalculator.rate_match(states, rated, params)
            for change in changes:
                row = rows[change.player_id]
                change.after.write_to(row)
                s.add(build_history_row(change, row.id, params.version))
            s.flush()

            logger.info(
                f"Rated match {match_id} with parameters v{params.version}: "
                + ", ".join(f"{c.player_id} {c.before.rating}->{c.after.rating}" for c in changes)
            )
            return changes

    @staticmethod
    def arrived_out_of_order(session: Session, rated: RatedMatch) -> bool:
        """
        Whether a participant already has rated events played after this match.

        Such events are later results of the same season, or manual adjustments
        made on or after the match date.
        """
        players = sorted(rated.players)
        key = (rated.date_played, rated.match_created_at, rated.match_id)
        later_results = session.execute(
            select(MatchResult.date_played, MatchResult.match_created_at, MatchResult.match_id).where(
                MatchResult.season_id == rated.season_id,
                MatchResult.entity_id.in_(players),
                MatchResult.match_id != rated.match_id,
                MatchResult.date_played >= rated.date_played,
            )
        ).all()
        if any(tuple(row) > key for row in later_results):
            return True

        later_adjustment = session.execute(
            select(func.count(RatingAdjustment.id))
            .join(PlayerRating, RatingAdjustment.player_rating_id == PlayerRating.id)
            .where(
                PlayerRating.season_id == rated.season_id,
                PlayerRating.player_id.in_(players),
                RatingAdjustment.created_at >= rated.date_played,
            )
        ).scalar()
        return later_adjustment > 0

    def _rerate_season_tail(self, session: Session, rated: RatedMatch,
                            params: RatingParametersSnapshot) -> List[RatingChange]:
        """
        Re-rate a match played before events that are already rated.

        The season is replayed in play order and every player whose rating
        depends on the match is rewritten. History rows that still agree with
        the replay are kept; the rest are superseded and replaced.
        """
        season_id = rated.season_id
        results = [
            ResultRecord.from_row(row) for row in session.execute(
                select(MatchResult)
                .where(MatchResult.season_id == season_id)
                .order_by(MatchResult.entity_id, MatchResult.result_sequence)
            ).scalars().all()
        ]
        states, history = SeasonReplay.replay_ratings(results, load_adjustment_events(session, season_id), params)
        affected = SeasonReplay.affected_players(results, rated.match_id)

        now = utc_now()
        rewritten = 0
        for player_id in sorted(affected):
            row = self.get_or_create_rating(session, player_id, season_id, params)
            states[player_id].write_to(row)

            live = session.execute(
                select(RatingHistory)
                .where(RatingHistory.player_rating_id == row.id, RatingHistory.superseded_at.is_(None))
                .order_by(RatingHistory.id)
            ).scalars().all()
            replayed = history.get(player_id, [])

            kept = 0
            for entry, change in zip(live, replayed):
                if (entry.match_id, entry.reason, entry.rating_before, entry.rating_after,
                        entry.rd_before, entry.rd_after) != (
                        change.match_id, change.reason, change.before.rating, change.after.rating,
                        change.before.rating_deviation, change.after.rating_deviation):
                    break
                kept += 1

            for entry in live[kept:]:
                entry.superseded_at = now
            for change in replayed[kept:]:
                entry = build_history_row(change, row.id, params.version)
                session.add(entry)
                if change.adjustment_id is not None:
                    session.flush()
                    session.get(RatingAdjustment, change.adjustment_id).rating_history_id = entry.id
            rewritten += len(replayed) - kept
        session.flush()

        changes = [
            change for player_id in sorted(rated.players)
            for change in history.get(player_id, []) if change.match_id == rated.match_id
        ]
        logger.info(
            f"Match {rated.match_id} was played before already rated events; re-rated "
            f"{len(affected)} players with parameters v{params.version} ({rewritten} history rows rewritten)"
        )
        return changes

    def get_player_rating(self, player_id: str, season_id: str,
                          session: Optional[Session] = None) -> Optional[RatingState]:
        with self._get_session_context(session) as s:
            row = s.execute(
                select(PlayerRating).where(PlayerRating.player_id == player_id, PlayerRating.season_id == season_id)
            ).scalar_one_or_none()
            return RatingState.from_row(row) if row is not None else None

    def get_rating_history(self, player_id: str, season_id: str, include_superseded: bool = False,
                           session: Optional[Session] = None) -> List[RatingHistoryEntry]:
        """
        Rating history of a player in a season, oldest first.

        Superseded rows (replaced by a recalculation) are excluded unless asked for.
        """
        with self._get_session_context(session) as s:
            query = (
                select(RatingHistory)
                .join(PlayerRating, RatingHistory.player_rating_id == PlayerRating.id)
                .where(PlayerRating.player_id == player_id, PlayerRating.season_id == season_id)
                .order_by(RatingHistory.id)
            )
            if not include_superseded:
                query = query.where(RatingHistory.superseded_at.is_(None))

            return [
                RatingHistoryEntry(
                    history_id=row.id,
                    player_id=player_id,
                    season_id=season_id,
                    match_id=row.match_id,
                    rating_before=row.rating_before,
                    rating_after=row.rating_after,
                    delta=row.delta,
                    rd_before=row.rd_before,
                    rd_after=row.rd_after,
                    reason=row.reason,
                    notes=row.notes,
                    effective_at=row.effective_at,
                    parameters_version=row.parameters_version,
                )
                for row in s.execute(query).scalars().all()
            ]
