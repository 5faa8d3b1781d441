"""
Match pipeline service.

Drives a finalized match through recording, standings and rating in one
transaction, in that fixed order:

    MatchResultRecorder -> StandingsAggregator -> RatingEngine

The participants' entity locks are held for the whole transaction so result
sequences stay gapless and no recalculation apply interleaves with the
recording. Sequence collisions from writers outside this process surface as
integrity errors and the whole match is retried.

A match played before results that are already recorded takes its place in
each entity's sequence, and the players it affects are re-rated in play order.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from league_engine.config import Config
from league_engine.data_models.match import FinalizedMatch
from league_engine.data_models.ratings import RatingChange
from league_engine.data_models.standings import ResultRecord, StandingRow
from league_engine.operations.lock_gate import LockGate
from league_engine.operations.match_result_recorder import MatchResultRecorder
from league_engine.operations.rating_engine import RatingEngine
from league_engine.operations.season_computation import get_last_computed_at, mark_season_computed
from league_engine.operations.standings_aggregator import StandingsAggregator
from league_engine.services.base import BaseService
from league_engine.services.rating_parameters import RatingParametersService
from league_engine.utils.entity_locks import EntityLockManager

logger = logging.getLogger(__name__)


@dataclass
class PipelineOutcome:
    match_id: str
    results: List[ResultRecord] = field(default_factory=list)
    standings: List[StandingRow] = field(default_factory=list)
    rating_changes: List[RatingChange] = field(default_factory=list)
    computed_at: Optional[datetime] = None


class MatchPipeline(BaseService):
    """Single entry point for finalized matches."""

    def __init__(self, database, recorder: Optional[MatchResultRecorder] = None,
                 aggregator: Optional[StandingsAggregator] = None,
                 rating_engine: Optional[RatingEngine] = None,
                 parameters_service: Optional[RatingParametersService] = None,
                 lock_manager: Optional[EntityLockManager] = None,
                 max_retries: Optional[int] = None):
        super().__init__(database.session_factory)
        self.recorder = recorder or MatchResultRecorder(database)
        self.aggregator = aggregator or StandingsAggregator(database)
        self.parameters_service = parameters_service or RatingParametersService(database.session_factory)
        self.rating_engine = rating_engine or RatingEngine(database, self.parameters_service)
        self.lock_manager = lock_manager or EntityLockManager.shared()
        self.max_retries = max_retries or Config.PIPELINE_MAX_RETRIES

    def handle_match_finalized(self, match: FinalizedMatch) -> Optional[PipelineOutcome]:
        """
        Record, rank and rate one finalized match.

        Args:
            match: The finalized match

        Returns:
            PipelineOutcome, or None when the match was already processed

        Raises:
            IncompleteMatch: If the match is not in a terminal state
            ValidationError: If the match is structurally inconsistent
            SeasonLockedError: If the match's season is locked
            ConfigurationError: If no rating parameters are active
        """
        entity_ids = [p.entity_id for p in match.participants]

        def process_match() -> Optional[PipelineOutcome]:
            with self.lock_manager.hold(match.season_id, entity_ids):
                with self.get_session() as session:
                    if self.recorder.is_recorded(session, match.match_id):
                        logger.info(f"Match {match.match_id} already processed; ignoring re-delivery")
                        return None

                    LockGate.assert_writable(session, match.season_id)
                    params = self.parameters_service.get_active(session)

                    results = self.recorder.record(match, session=session)
                    if not results:
                        return PipelineOutcome(match_id=match.match_id)

                    standings = self.aggregator.recompute_division(
                        match.division_id, match.season_id, session=session
                    )
                    changes = self.rating_engine.apply_match(match.match_id, params=params, session=session)
                    computed_at = mark_season_computed(session, match.season_id, f"match:{match.match_id}")

                    return PipelineOutcome(
                        match_id=match.match_id,
                        results=results,
                        standings=standings,
                        rating_changes=changes,
                        computed_at=computed_at,
                    )

        outcome = self.execute_with_retry(process_match, max_retries=self.max_retries)
        if outcome is not None:
            logger.info(f"Processed match {match.match_id} in season {match.season_id}")
        return outcome

    def get_last_computed_at(self, season_id: str) -> Optional[datetime]:
        """When the season's standings and ratings were last successfully computed"""
        with self.get_session() as session:
            return get_last_computed_at(session, season_id)
