"""
Recalculation Coordinator Module

Replays recorded history over a chosen scope and re-applies it safely.

Job lifecycle: PENDING -> PREVIEW_READY -> APPLIED | FAILED

- submit(): opens a PENDING job; one open job per (scope, target, season)
- generate_preview(): replays the season in memory, diffs it against live
  state and stores the diff without touching live rows
- apply(): replays again, verifies the result matches the preview, and writes
  results, standings, ratings and history in a single transaction

Any failure during preview or apply (including a timeout) leaves live state
untouched and moves the job to FAILED with its error message.

Scope closure:
- match: the match participants
- player: the player
- division: every entity with results in the division
- season: every entity of the season

Standings are rebuilt for every division the closure touches, extended until
no entity of a rebuilt division has results elsewhere, so per-season result
sequences stay consistent. Ratings are replayed over the whole season because
opponents' ratings feed each expected score, but only the scoped players'
ratings are written.
"""

import hashlib
import json
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from league_engine.config import Config
from league_engine.constants import RecalculationConstants
from league_engine.data_models.ratings import RatingParametersSnapshot, RatingState
from league_engine.data_models.recalculation import RecalculationResult
from league_engine.data_models.standings import ResultRecord, StandingRow
from league_engine.database.models import (
    DivisionStanding, MatchResult, PlayerRating, RatingAdjustment,
    RatingHistory, RatingRecalculation, RecalculationScope, RecalculationStatus
)
from league_engine.operations.base import BaseOperations
from league_engine.operations.lock_gate import LockGate
from league_engine.operations.rating_engine import RatingEngine, build_history_row, load_adjustment_events
from league_engine.operations.season_computation import mark_season_computed
from league_engine.operations.season_replay import SeasonReplay, SeasonReplayOutcome
from league_engine.operations.standings_aggregator import StandingsAggregator, standing_from_row
from league_engine.services.rating_parameters import RatingParametersService
from league_engine.utils.entity_locks import EntityLockManager
from league_engine.utils.exceptions import (
    ConflictError, ConsistencyError, RecalculationTimeout, StateError, ValidationError
)
from league_engine.utils.logger import setup_logger
from league_engine.utils.time_utils import utc_now

logger = setup_logger(__name__)

RESULT_WRITE_FIELDS = (
    'participation_points', 'sets_won_points', 'win_bonus_points', 'match_points', 'margin',
    'result_sequence', 'counts_for_standings',
)


@dataclass
class RecalculationPlan:
    scope_entities: List[str]
    divisions: List[str]
    written_entities: List[str]
    outcome: SeasonReplayOutcome
    preview: Dict[str, Any]
    checksum: str


def _standing_summary(row: Optional[StandingRow]) -> Optional[Dict[str, int]]:
    if row is None:
        return None
    return {
        'rank': row.rank,
        'total_points': row.total_points,
        'counted_matches': row.counted_matches,
        'matches_played': row.matches_played,
        'wins': row.wins,
        'losses': row.losses,
    }


class RecalculationCoordinator(BaseOperations):
    """
    Runs recalculation jobs.

    The coordinator shares the process-wide entity locks with the match
    pipeline, so an apply never interleaves with new results for the same
    entities.
    """

    def __init__(self, database, aggregator: Optional[StandingsAggregator] = None,
                 parameters_service: Optional[RatingParametersService] = None,
                 lock_manager: Optional[EntityLockManager] = None,
                 timeout_seconds: Optional[float] = None, max_workers: Optional[int] = None):
        super().__init__(database)
        self.aggregator = aggregator or StandingsAggregator(database)
        self.parameters_service = parameters_service or RatingParametersService(database.session_factory)
        self.lock_manager = lock_manager or EntityLockManager.shared()
        self.timeout_seconds = timeout_seconds or Config.RECALC_TIMEOUT_SECONDS
        self.max_workers = max_workers or Config.RECALC_MAX_WORKERS

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def submit(self, scope: RecalculationScope, target_id: str, season_id: str,
               admin_id: Optional[str] = None, session: Optional[Session] = None) -> RecalculationResult:
        """
        Open a PENDING job.

        Args:
            scope: Breadth of the replay
            target_id: Match, player, division or season id, matching the scope
            season_id: Season the target belongs to
            admin_id: Admin requesting the job
            session: Optional database session

        Returns:
            RecalculationResult for the new job

        Raises:
            ValidationError: If the target has nothing to recalculate
            ConflictError: If an open job already exists for the same target
        """
        scope = RecalculationScope(scope)
        active_key = RatingRecalculation.build_active_key(scope, target_id, season_id)

        with self._get_session_context(session) as s:
            if admin_id is not None:
                self._require_admin(s, admin_id)
            self._validate_target(s, scope, target_id, season_id)

            existing = s.execute(
                select(RatingRecalculation).where(RatingRecalculation.active_key == active_key)
            ).scalar_one_or_none()
            if existing is not None:
                raise ConflictError(scope.value, target_id, existing.id)

            job = RatingRecalculation(
                scope=scope,
                target_id=target_id,
                season_id=season_id,
                status=RecalculationStatus.PENDING,
                active_key=active_key,
                requested_by_admin=admin_id,
            )
            s.add(job)
            try:
                s.flush()
            except IntegrityError:
                # Another submission for the same target committed first
                raise ConflictError(scope.value, target_id, -1)

            logger.info(f"Submitted recalculation {job.id}: {scope.value} {target_id} in season {season_id}")
            return RecalculationResult.from_job(job)

    def generate_preview(self, job_id: int) -> RecalculationResult:
        """
        Replay the job's scope and store the diff against live state.

        Raises:
            ValidationError: If the job does not exist
            StateError: If the job is already terminal
            ConfigurationError: If no parameters version is active
        """
        checkpoint = self._make_checkpoint(job_id)
        try:
            with self.db.transaction() as s:
                job = self._get_job(s, job_id, for_update=True)
                if job.status not in (RecalculationStatus.PENDING, RecalculationStatus.PREVIEW_READY):
                    raise StateError(f"Recalculation {job_id} is {job.status.value}; cannot preview")

                params = self.parameters_service.get_active(s)
                plan = self._build_plan(s, job, params, checkpoint, for_update=False)

                job.changes_preview = json.dumps(plan.preview, sort_keys=True, default=str)
                job.preview_checksum = plan.checksum
                job.parameters_version = params.version
                job.affected_players_count = len(plan.scope_entities)
                job.preview_generated_at = utc_now()
                job.status = RecalculationStatus.PREVIEW_READY
                s.flush()

                logger.info(
                    f"Recalculation {job_id} preview ready: {job.affected_players_count} players, "
                    f"{plan.preview['summary']['entities_changed']} changed"
                )
                return RecalculationResult.from_job(job)
        except Exception as e:
            self._mark_failed(job_id, e)
            raise

    def apply(self, job_id: int, allow_override: bool = False) -> RecalculationResult:
        """
        Write a previewed job's replay to live state in one transaction.

        Args:
            job_id: Job in PREVIEW_READY
            allow_override: Admin-triggered write to a locked season; honoured
                only when the season lock allows overrides

        Returns:
            RecalculationResult of the APPLIED job

        Raises:
            StateError: If the job is not PREVIEW_READY
            SeasonLockedError: If the season is locked and no override applies
            ConsistencyError: If the replay no longer matches its preview
            RecalculationTimeout: If the apply exceeds its time budget
        """
        with self.db.get_session() as s:
            job = self._get_job(s, job_id)
            if job.status != RecalculationStatus.PREVIEW_READY:
                raise StateError(f"Recalculation {job_id} is {job.status.value}; only previewed jobs can be applied")
            season_id = job.season_id
            lock_entities = self._lock_entities(s, job)

        checkpoint = self._make_checkpoint(job_id)
        try:
            with self.lock_manager.hold(season_id, lock_entities,
                                        lease_seconds=self.timeout_seconds + self.lock_manager.timeout_seconds):
                with self.db.transaction() as s:
                    job = self._get_job(s, job_id, for_update=True)
                    if job.status != RecalculationStatus.PREVIEW_READY:
                        raise StateError(f"Recalculation {job_id} changed to {job.status.value} during apply")
                    LockGate.assert_writable(s, season_id, admin_override=allow_override)

                    params = self.parameters_service.get_active(s)
                    if params.version != job.parameters_version:
                        raise ConsistencyError(
                            f"Rating parameters moved from v{job.parameters_version} to v{params.version} since preview"
                        )

                    plan = self._build_plan(s, job, params, checkpoint, for_update=True)
                    if plan.checksum != job.preview_checksum:
                        raise ConsistencyError(
                            f"Replay of recalculation {job_id} no longer matches its preview"
                        )

                    self._write_plan(s, job, plan, params, checkpoint)

                    job.status = RecalculationStatus.APPLIED
                    job.applied_at = utc_now()
                    job.active_key = None
                    mark_season_computed(s, season_id, f"recalculation:{job_id}")
                    s.flush()

                    logger.info(f"Applied recalculation {job_id}: {job.affected_players_count} players")
                    return RecalculationResult.from_job(job)
        except Exception as e:
            self._mark_failed(job_id, e)
            raise

    def get_result(self, job_id: int, session: Optional[Session] = None) -> RecalculationResult:
        with self._get_session_context(session) as s:
            return RecalculationResult.from_job(self._get_job(s, job_id))

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _make_checkpoint(self, job_id: int) -> Callable[[], None]:
        deadline = time.monotonic() + self.timeout_seconds

        def checkpoint():
            if time.monotonic() > deadline:
                raise RecalculationTimeout(job_id, self.timeout_seconds)
        return checkpoint

    @staticmethod
    def _get_job(session: Session, job_id: int, for_update: bool = False) -> RatingRecalculation:
        query = select(RatingRecalculation).where(RatingRecalculation.id == job_id)
        if for_update:
            query = query.with_for_update()
        job = session.execute(query).scalar_one_or_none()
        if job is None:
            raise ValidationError(f"Recalculation {job_id} not found")
        return job

    @staticmethod
    def _load_season_results(session: Session, season_id: str, for_update: bool = False) -> List[ResultRecord]:
        query = (
            select(MatchResult)
            .where(MatchResult.season_id == season_id)
            .order_by(MatchResult.entity_id, MatchResult.result_sequence)
        )
        if for_update:
            query = query.with_for_update()
        return [ResultRecord.from_row(row) for row in session.execute(query).scalars().all()]

    @staticmethod
    def _rated_players(session: Session, season_id: str) -> Set[str]:
        return set(session.execute(
            select(PlayerRating.player_id).where(PlayerRating.season_id == season_id)
        ).scalars().all())

    def _validate_target(self, session: Session, scope: RecalculationScope, target_id: str, season_id: str):
        results = self._load_season_results(session, season_id)
        if scope == RecalculationScope.MATCH:
            found = any(r.match_id == target_id for r in results)
        elif scope == RecalculationScope.DIVISION:
            found = any(r.division_id == target_id for r in results)
        elif scope == RecalculationScope.PLAYER:
            found = any(r.entity_id == target_id for r in results) or target_id in self._rated_players(session, season_id)
        else:
            found = target_id == season_id and (bool(results) or bool(self._rated_players(session, season_id)))
        if not found:
            raise ValidationError(f"Nothing to recalculate for {scope.value} {target_id} in season {season_id}")

    def _resolve_closure(self, session: Session, job: RatingRecalculation,
                         results: List[ResultRecord]) -> Tuple[Set[str], Set[str], Set[str]]:
        """Scoped entities, rebuilt divisions and entities whose rows are rewritten"""
        divisions_of: Dict[str, Set[str]] = defaultdict(set)
        entities_in: Dict[str, Set[str]] = defaultdict(set)
        for r in results:
            divisions_of[r.entity_id].add(r.division_id)
            entities_in[r.division_id].add(r.entity_id)

        if job.scope == RecalculationScope.MATCH:
            match_results = [r for r in results if r.match_id == job.target_id]
            if not match_results:
                raise ValidationError(f"Match {job.target_id} has no results in season {job.season_id}")
            scoped = {r.entity_id for r in match_results}
            divisions = {r.division_id for r in match_results}
        elif job.scope == RecalculationScope.PLAYER:
            scoped = {job.target_id}
            divisions = set(divisions_of.get(job.target_id, set()))
        elif job.scope == RecalculationScope.DIVISION:
            scoped = set(entities_in.get(job.target_id, set()))
            if not scoped:
                raise ValidationError(f"Division {job.target_id} has no results in season {job.season_id}")
            divisions = {job.target_id}
        else:
            scoped = set(divisions_of) | self._rated_players(session, job.season_id)
            divisions = set(entities_in)

        while True:
            written = set().union(*(entities_in[d] for d in divisions)) if divisions else set()
            reached = set().union(*(divisions_of[e] for e in written)) if written else set()
            if reached <= divisions:
                break
            divisions |= reached

        return scoped, divisions, written | scoped

    def _lock_entities(self, session: Session, job: RatingRecalculation) -> Set[str]:
        results = self._load_season_results(session, job.season_id)
        scoped, _, written = self._resolve_closure(session, job, results)
        return scoped | written

    def _build_plan(self, session: Session, job: RatingRecalculation, params: RatingParametersSnapshot,
                    checkpoint: Callable[[], None], for_update: bool) -> RecalculationPlan:
        results = self._load_season_results(session, job.season_id, for_update=for_update)
        scoped, divisions, written = self._resolve_closure(session, job, results)
        checkpoint()

        outcome = SeasonReplay.replay(
            results=results,
            divisions=sorted(divisions),
            season_id=job.season_id,
            adjustments=load_adjustment_events(session, job.season_id),
            params=params,
            strategy=self.aggregator.strategy,
            is_locked=LockGate.is_season_locked(session, job.season_id),
            max_workers=self.max_workers,
            checkpoint=checkpoint,
        )

        live_results = {r.row_id: r for r in results}
        live_standings = {
            (row.division_id, row.entity_id): standing_from_row(row)
            for row in session.execute(
                select(DivisionStanding).where(
                    DivisionStanding.season_id == job.season_id,
                    DivisionStanding.division_id.in_(divisions),
                )
            ).scalars().all()
        } if divisions else {}
        live_ratings = {
            row.player_id: RatingState.from_row(row)
            for row in session.execute(
                select(PlayerRating).where(
                    PlayerRating.season_id == job.season_id,
                    PlayerRating.player_id.in_(scoped),
                )
            ).scalars().all()
        } if scoped else {}

        replayed_standings = {
            (d, row.entity_id): row
            for d, standings in outcome.standings.items() for row in standings.rows
        }

        entries = []
        changed_entities = 0
        for entity_id in sorted(scoped):
            standing_changes = []
            for division_id in sorted(divisions):
                before = _standing_summary(live_standings.get((division_id, entity_id)))
                after = _standing_summary(replayed_standings.get((division_id, entity_id)))
                if before is None and after is None:
                    continue
                standing_changes.append({'division_id': division_id, 'before': before, 'after': after})

            rating_before = live_ratings.get(entity_id)
            rating_after = outcome.ratings.get(entity_id)
            rating_change = {
                'before': rating_before.as_dict() if rating_before else None,
                'after': rating_after.as_dict() if rating_after else None,
            }
            changed = (
                any(c['before'] != c['after'] for c in standing_changes)
                or rating_change['before'] != rating_change['after']
            )
            changed_entities += int(changed)
            entries.append({
                'entity_id': entity_id,
                'changed': changed,
                'standings': standing_changes,
                'rating': rating_change,
            })

        results_changed = sum(
            1 for r in outcome.results
            if r.entity_id in written and any(
                getattr(r, name) != getattr(live_results[r.row_id], name) for name in RESULT_WRITE_FIELDS
            )
        )
        other_standings_changed = sum(
            1 for key, row in replayed_standings.items()
            if key[1] not in scoped and (
                live_standings.get(key) is None or live_standings[key].comparable() != row.comparable()
            )
        )

        truncated = len(entries) > RecalculationConstants.MAX_PREVIEW_ENTRIES
        preview = {
            'scope': job.scope.value,
            'target_id': job.target_id,
            'season_id': job.season_id,
            'parameters_version': params.version,
            'selection_policy': self.aggregator.policy.value,
            'divisions': sorted(divisions),
            'entities': entries[:RecalculationConstants.MAX_PREVIEW_ENTRIES],
            'truncated': truncated,
            'summary': {
                'entities': len(entries),
                'entities_changed': changed_entities,
                'results_changed': results_changed,
                'other_standings_changed': other_standings_changed,
                'history_rows': sum(len(outcome.history.get(p, [])) for p in scoped),
            },
        }

        return RecalculationPlan(
            scope_entities=sorted(scoped),
            divisions=sorted(divisions),
            written_entities=sorted(written),
            outcome=outcome,
            preview=preview,
            checksum=self._checksum(outcome, scoped, written, params),
        )

    def _checksum(self, outcome: SeasonReplayOutcome, scoped: Set[str], written: Set[str],
                  params: RatingParametersSnapshot) -> str:
        """Fingerprint of everything an apply would write"""
        canonical = {
            'parameters_version': params.version,
            'selection_policy': self.aggregator.policy.value,
            'results': sorted(
                [r.row_id] + [getattr(r, name) for name in RESULT_WRITE_FIELDS]
                for r in outcome.results if r.entity_id in written
            ),
            'standings': [
                row.comparable()
                for division_id in sorted(outcome.standings)
                for row in outcome.standings[division_id].rows
            ],
            'ratings': {
                player_id: {**state.as_dict(), 'volatility': state.volatility}
                for player_id, state in sorted(outcome.ratings.items()) if player_id in scoped
            },
            'history': {
                player_id: [
                    [c.match_id, c.adjustment_id, c.reason.value, c.before.rating, c.after.rating,
                     c.before.rating_deviation, c.after.rating_deviation, c.effective_at]
                    for c in outcome.history.get(player_id, [])
                ]
                for player_id in sorted(scoped)
            },
        }
        encoded = json.dumps(canonical, sort_keys=True, default=str).encode('utf-8')
        return hashlib.sha256(encoded).hexdigest()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _write_plan(self, session: Session, job: RatingRecalculation, plan: RecalculationPlan,
                    params: RatingParametersSnapshot, checkpoint: Callable[[], None]):
        self._write_results(session, job.season_id, plan)
        checkpoint()
        for division_id in plan.divisions:
            self.aggregator.write_standings(session, plan.outcome.standings[division_id])
            checkpoint()
        self._write_ratings(session, job, plan, params, checkpoint)

    @staticmethod
    def _write_results(session: Session, season_id: str, plan: RecalculationPlan) -> int:
        written = set(plan.written_entities)
        if not written:
            return 0
        target = {r.row_id: r for r in plan.outcome.results if r.entity_id in written}
        rows = session.execute(
            select(MatchResult)
            .where(MatchResult.season_id == season_id, MatchResult.entity_id.in_(written))
            .with_for_update()
        ).scalars().all()

        # Park moving sequences on unique negative values so reordering never collides
        moving = [row for row in rows if row.result_sequence != target[row.id].result_sequence]
        for row in moving:
            row.result_sequence = -row.id
        session.flush()

        changed = 0
        for row in rows:
            replayed = target[row.id]
            updates = {
                name: getattr(replayed, name) for name in RESULT_WRITE_FIELDS
                if getattr(row, name) != getattr(replayed, name)
            }
            for name, value in updates.items():
                setattr(row, name, value)
            changed += int(bool(updates))
        session.flush()
        return changed

    @staticmethod
    def _write_ratings(session: Session, job: RatingRecalculation, plan: RecalculationPlan,
                       params: RatingParametersSnapshot, checkpoint: Callable[[], None]):
        now = utc_now()
        for player_id in plan.scope_entities:
            checkpoint()
            state = plan.outcome.ratings.get(player_id)
            if state is None:
                continue
            row = RatingEngine.get_or_create_rating(session, player_id, job.season_id, params)
            state.write_to(row)

            superseded = session.execute(
                select(RatingHistory).where(
                    RatingHistory.player_rating_id == row.id,
                    RatingHistory.superseded_at.is_(None),
                )
            ).scalars().all()
            for history in superseded:
                history.superseded_at = now
                history.superseded_by_recalculation_id = job.id

            for change in plan.outcome.history.get(player_id, []):
                history = build_history_row(change, row.id, params.version, recalculation_id=job.id)
                session.add(history)
                if change.adjustment_id is not None:
                    session.flush()
                    adjustment = session.get(RatingAdjustment, change.adjustment_id)
                    adjustment.rating_history_id = history.id
        session.flush()

    def _mark_failed(self, job_id: int, error: Exception):
        """Record a failure in its own transaction after the work has rolled back"""
        with self.db.transaction() as s:
            job = s.get(RatingRecalculation, job_id)
            if job is None or job.status.is_terminal:
                return
            job.status = RecalculationStatus.FAILED
            job.failed_at = utc_now()
            job.error_message = f"{type(error).__name__}: {error}"
            job.active_key = None
        logger.error(f"Recalculation {job_id} failed: {type(error).__name__}: {error}")
