"""
Match Result Recorder Module

Turns one finalized match into one scored result row per participant.

Scoring per side:
- participation: 1 point for every counted match
- sets won: 1 point per set won, at most 2
- win bonus: 2 points for the winning side
- margin: games won minus games lost

Walkovers score no sets or games; the winner still takes the win bonus.

The recorder inserts rows and keeps each entity's result sequences in play
order, even when matches arrive late. Standings and ratings are driven separately by
the match pipeline so that live processing and recalculation replay share the
same path.
"""

from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from league_engine.constants import ScoringConstants
from league_engine.data_models.match import FinalizedMatch
from league_engine.data_models.standings import ResultRecord
from league_engine.database.models import MatchResult
from league_engine.operations.base import BaseOperations
from league_engine.utils.exceptions import DuplicateResult, IncompleteMatch
from league_engine.utils.logger import setup_logger

logger = setup_logger(__name__)


def score_side(sets_won: int, is_win: bool, is_walkover: bool) -> Tuple[int, int, int]:
    """
    Point breakdown for one side.

    Returns:
        (participation_points, sets_won_points, win_bonus_points)
    """
    participation = ScoringConstants.PARTICIPATION_POINTS
    sets_points = 0 if is_walkover else min(sets_won, ScoringConstants.MAX_SETS_WON_POINTS)
    win_bonus = ScoringConstants.WIN_BONUS_POINTS if is_win else 0
    return participation, sets_points, win_bonus


def rescore(record: ResultRecord) -> ResultRecord:
    """Recompute a stored result's points from its raw counts"""
    participation, sets_points, win_bonus = score_side(record.sets_won, record.is_win, record.is_walkover)
    return replace(
        record,
        participation_points=participation,
        sets_won_points=sets_points,
        win_bonus_points=win_bonus,
        match_points=participation + sets_points + win_bonus,
        margin=record.games_won - record.games_lost,
    )


class MatchResultRecorder(BaseOperations):
    """Records scored per-participant results for finalized matches."""

    @staticmethod
    def score_match(match: FinalizedMatch) -> List[ResultRecord]:
        """
        Score every participant of a match without touching the database.

        Returned records carry result_sequence 0; sequences are assigned on insert.
        """
        records = []
        for participant in sorted(match.participants, key=lambda p: (p.team, p.entity_id)):
            team = participant.team
            opponents = sorted(p.entity_id for p in match.participants if p.team != team)
            side = match.side(team)
            if match.is_walkover:
                sets_won = sets_lost = games_won = games_lost = 0
            else:
                sets_won, sets_lost = side.sets_won, side.sets_lost
                games_won, games_lost = side.games_won, side.games_lost

            participation, sets_points, win_bonus = score_side(sets_won, participant.is_winner, match.is_walkover)
            records.append(ResultRecord(
                match_id=match.match_id,
                division_id=match.division_id,
                season_id=match.season_id,
                entity_id=participant.entity_id,
                opponent_id=opponents[0] if opponents else None,
                team=team,
                sport_type=match.sport_type,
                game_type=match.game_type,
                is_win=participant.is_winner,
                is_walkover=match.is_walkover,
                walkover_reason=match.walkover_reason if match.is_walkover else None,
                participation_points=participation,
                sets_won_points=sets_points,
                win_bonus_points=win_bonus,
                match_points=participation + sets_points + win_bonus,
                margin=games_won - games_lost,
                sets_won=sets_won,
                sets_lost=sets_lost,
                games_won=games_won,
                games_lost=games_lost,
                date_played=match.date_played,
                match_created_at=match.created_at,
            ))
        return records

    @staticmethod
    def is_recorded(session: Session, match_id: str) -> bool:
        count = session.execute(
            select(func.count(MatchResult.id)).where(MatchResult.match_id == match_id)
        ).scalar()
        return count > 0

    @staticmethod
    def place_in_play_order(session: Session, record: ResultRecord) -> int:
        """
        Result sequence for a new result of an entity in a season.

        Sequences follow date played, then match creation. A result played
        before results already recorded takes their place and the later ones
        move up by one.

        Callers must hold the entity's lock; the unique sequence constraint
        rejects a colliding insert from any writer that does not.
        """
        rows = session.execute(
            select(MatchResult)
            .where(MatchResult.season_id == record.season_id, MatchResult.entity_id == record.entity_id)
            .order_by(MatchResult.result_sequence)
            .with_for_update()
        ).scalars().all()
        later = [
            row for row in rows
            if (row.date_played, row.match_created_at, row.match_id) > record.chronological_key
        ]
        if not later:
            return len(rows) + 1

        moved = {row.id: row.result_sequence + 1 for row in later}
        # Park on unique negative values first so shifting never collides
        for row in later:
            row.result_sequence = -row.id
        session.flush()
        for row in later:
            row.result_sequence = moved[row.id]
        session.flush()

        logger.info(
            f"Match {record.match_id} was played before {len(later)} recorded results of "
            f"{record.entity_id}; later sequences moved up"
        )
        return len(rows) - len(later) + 1

    def record(self, match: FinalizedMatch, session: Optional[Session] = None) -> List[ResultRecord]:
        """
        Insert one scored result row per participant.

        Args:
            match: The finalized match
            session: Optional database session

        Returns:
            The inserted records with sequences and row ids; empty for
            cancelled or void matches

        Raises:
            IncompleteMatch: If the match is not in a terminal state
            ValidationError: If the match is structurally inconsistent
            DuplicateResult: If a participant already has a row for this match
        """
        if not match.status.is_terminal:
            raise IncompleteMatch(match.match_id, match.status.value)
        match.validate()
        if not match.status.is_countable:
            logger.info(f"Match {match.match_id} ended {match.status.value}; nothing to record")
            return []

        with self._get_session_context(session) as s:
            entity_ids = [p.entity_id for p in match.participants]
            existing = s.execute(
                select(MatchResult.entity_id).where(
                    MatchResult.match_id == match.match_id,
                    MatchResult.entity_id.in_(entity_ids),
                )
            ).scalars().first()
            if existing is not None:
                raise DuplicateResult(match.match_id, existing)

            rows: Dict[str, MatchResult] = {}
            for record in self.score_match(match):
                sequence = self.place_in_play_order(s, record)
                row = MatchResult(**record.with_sequence(sequence).column_values())
                s.add(row)
                rows[record.entity_id] = row
            s.flush()

            recorded = [ResultRecord.from_row(row) for row in rows.values()]
            logger.info(
                f"Recorded match {match.match_id} for {len(recorded)} participants: "
                + ", ".join(f"{r.entity_id}={r.match_points}pts#{r.result_sequence}" for r in recorded)
            )
            return recorded
