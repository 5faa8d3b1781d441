"""
Standings Aggregator Module

Derives each entity's divisional standing from its match results.

For every entity in a division and season:
- at most K results are flagged counts_for_standings by the selection policy
- total_points sums match points over the flagged results only
- matches played, wins, losses, sets and games count every result

Ranking sorts by total points, then breaks ties by:
1. head-to-head wins among the tied entities this season
2. games differential
3. entity id ascending
"""

import json
from collections import defaultdict
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from league_engine.config import Config
from league_engine.data_models.standings import (
    DivisionStandings, ResultRecord, StandingRow, StandingSnapshot
)
from league_engine.database.models import DivisionStanding, MatchResult
from league_engine.operations.base import BaseOperations
from league_engine.operations.lock_gate import LockGate
from league_engine.utils.exceptions import DivisionMismatch
from league_engine.utils.logger import setup_logger
from league_engine.utils.selection_policies import (
    SelectionPolicy, SelectionStrategy, get_selection_strategy
)
from league_engine.utils.time_utils import utc_now

logger = setup_logger(__name__)


def group_match_sides(results: Sequence[ResultRecord]) -> Dict[str, Dict[int, List[str]]]:
    """Entities on each side of every match, keyed by match id then team"""
    sides: Dict[str, Dict[int, List[str]]] = defaultdict(lambda: defaultdict(list))
    for result in results:
        sides[result.match_id][result.team].append(result.entity_id)
    return sides


def build_head_to_head(results: Sequence[ResultRecord],
                       sides: Optional[Dict[str, Dict[int, List[str]]]] = None) -> Dict[str, Dict[str, int]]:
    """
    Wins and losses against each opponent.

    Every member of the opposing side counts as an opponent, so a doubles
    result credits both players of the other team. Without match sides only
    the recorded opponent_id is used.
    """
    record: Dict[str, Dict[str, int]] = {}
    for result in results:
        match_sides = sides.get(result.match_id) if sides else None
        if match_sides:
            opponents = sorted(
                entity_id for team, members in match_sides.items() if team != result.team
                for entity_id in members
            )
        else:
            opponents = [result.opponent_id] if result.opponent_id is not None else []
        for opponent in opponents:
            entry = record.setdefault(opponent, {'wins': 0, 'losses': 0})
            entry['wins' if result.is_win else 'losses'] += 1
    return {opponent: record[opponent] for opponent in sorted(record)}


def rank_rows(rows: List[StandingRow]) -> List[StandingRow]:
    """
    Order standings and assign ranks 1..n.

    Ties on points are broken by head-to-head wins inside the tied group,
    then games differential, then entity id.
    """
    by_points: Dict[int, List[StandingRow]] = defaultdict(list)
    for row in rows:
        by_points[row.total_points].append(row)

    ordered: List[StandingRow] = []
    for points in sorted(by_points, reverse=True):
        group = by_points[points]
        if len(group) == 1:
            ordered.extend(group)
            continue
        members = {row.entity_id for row in group}

        def tie_break_key(row: StandingRow):
            group_wins = sum(
                record['wins'] for opponent, record in row.head_to_head.items() if opponent in members
            )
            return (-group_wins, -row.games_differential, row.entity_id)

        ordered.extend(sorted(group, key=tie_break_key))

    return [replace(row, rank=rank) for rank, row in enumerate(ordered, start=1)]


def compute_division_standings(results: Sequence[ResultRecord], division_id: str, season_id: str,
                               strategy: SelectionStrategy, is_locked: bool = False) -> DivisionStandings:
    """
    Compute ranked standings for one division from its results.

    Args:
        results: Every result recorded in the division and season
        division_id: Target division
        season_id: Target season
        strategy: Best-K selection strategy
        is_locked: Whether the season is locked

    Returns:
        DivisionStandings with ranked rows and the flagged results per entity

    Raises:
        DivisionMismatch: If any result belongs to another division or season
    """
    by_entity: Dict[str, List[ResultRecord]] = defaultdict(list)
    for result in results:
        if result.division_id != division_id or result.season_id != season_id:
            raise DivisionMismatch(
                f"{division_id}/{season_id}", f"{result.division_id}/{result.season_id}"
            )
        by_entity[result.entity_id].append(result)

    sides = group_match_sides(results)
    rows = []
    flagged: Dict[str, List[ResultRecord]] = {}
    for entity_id in sorted(by_entity):
        entity_results = strategy.apply(by_entity[entity_id])
        flagged[entity_id] = entity_results
        counted = [r for r in entity_results if r.counts_for_standings]
        rows.append(StandingRow(
            division_id=division_id,
            season_id=season_id,
            entity_id=entity_id,
            rank=0,
            matches_played=len(entity_results),
            wins=sum(1 for r in entity_results if r.is_win),
            losses=sum(1 for r in entity_results if not r.is_win),
            total_points=sum(r.match_points for r in counted),
            counted_matches=len(counted),
            sets_won=sum(r.sets_won for r in entity_results),
            sets_lost=sum(r.sets_lost for r in entity_results),
            games_won=sum(r.games_won for r in entity_results),
            games_lost=sum(r.games_lost for r in entity_results),
            head_to_head=build_head_to_head(entity_results, sides),
            is_locked=is_locked,
        ))

    return DivisionStandings(
        division_id=division_id,
        season_id=season_id,
        rows=rank_rows(rows),
        results=flagged,
    )


class StandingsAggregator(BaseOperations):
    """Maintains DivisionStanding rows and the counts_for_standings flags."""

    def __init__(self, database, policy: Optional[SelectionPolicy] = None, k: Optional[int] = None):
        super().__init__(database)
        self.policy = SelectionPolicy(policy or Config.STANDINGS_SELECTION_POLICY)
        self.k = k or Config.BEST_K
        self.strategy = get_selection_strategy(self.policy, self.k)

    @staticmethod
    def load_division_results(session: Session, division_id: str, season_id: str,
                              for_update: bool = False) -> List[ResultRecord]:
        query = (
            select(MatchResult)
            .where(MatchResult.division_id == division_id, MatchResult.season_id == season_id)
            .order_by(MatchResult.entity_id, MatchResult.result_sequence)
        )
        if for_update:
            query = query.with_for_update()
        return [ResultRecord.from_row(row) for row in session.execute(query).scalars().all()]

    def compute(self, results: Sequence[ResultRecord], division_id: str, season_id: str,
                is_locked: bool = False) -> DivisionStandings:
        return compute_division_standings(results, division_id, season_id, self.strategy, is_locked)

    def recompute_division(self, division_id: str, season_id: str, admin_override: bool = False,
                           session: Optional[Session] = None) -> List[StandingRow]:
        """
        Recompute and store a division's standings.

        Args:
            division_id: Division to recompute
            season_id: Season of the division
            admin_override: True for admin-triggered writes to a locked season
            session: Optional database session

        Returns:
            The ranked standing rows

        Raises:
            SeasonLockedError: If the season is locked and no override applies
        """
        with self._get_session_context(session) as s:
            LockGate.assert_writable(s, season_id, admin_override)
            results = self.load_division_results(s, division_id, season_id, for_update=True)
            standings = self.compute(results, division_id, season_id,
                                     is_locked=LockGate.is_season_locked(s, season_id))
            changed = self.write_standings(s, standings)
            logger.debug(f"Division {division_id}/{season_id}: {len(standings.rows)} standings, {changed} changed")
            return standings.rows

    @staticmethod
    def write_standings(session: Session, standings: DivisionStandings) -> int:
        """
        Store computed standings and counted flags.

        Rows whose values are unchanged are left untouched, so writing the same
        standings twice is a no-op.

        Returns:
            Number of standing rows inserted or changed
        """
        flags = {
            (r.entity_id, r.match_id): r.counts_for_standings
            for entity_results in standings.results.values() for r in entity_results
        }
        result_rows = session.execute(
            select(MatchResult).where(
                MatchResult.division_id == standings.division_id,
                MatchResult.season_id == standings.season_id,
            )
        ).scalars().all()
        for row in result_rows:
            counted = flags.get((row.entity_id, row.match_id), False)
            if row.counts_for_standings != counted:
                row.counts_for_standings = counted

        existing = {
            row.entity_id: row for row in session.execute(
                select(DivisionStanding).where(
                    DivisionStanding.division_id == standings.division_id,
                    DivisionStanding.season_id == standings.season_id,
                ).with_for_update()
            ).scalars().all()
        }

        now = utc_now()
        changed = 0
        for standing in standings.rows:
            row = existing.pop(standing.entity_id, None)
            if row is not None and standing_from_row(row).comparable() == standing.comparable():
                continue
            if row is None:
                row = DivisionStanding(
                    division_id=standing.division_id,
                    season_id=standing.season_id,
                    entity_id=standing.entity_id,
                )
                session.add(row)
            row.rank = standing.rank
            row.matches_played = standing.matches_played
            row.wins = standing.wins
            row.losses = standing.losses
            row.total_points = standing.total_points
            row.counted_matches = standing.counted_matches
            row.sets_won = standing.sets_won
            row.sets_lost = standing.sets_lost
            row.games_won = standing.games_won
            row.games_lost = standing.games_lost
            row.head_to_head = json.dumps(standing.head_to_head, sort_keys=True)
            row.is_locked = standing.is_locked
            row.last_calculated_at = now
            changed += 1

        # Entities left over no longer have any results in the division
        for stale in existing.values():
            session.delete(stale)
            changed += 1

        session.flush()
        return changed

    def get_division_standings(self, division_id: str, season_id: str,
                               session: Optional[Session] = None) -> List[StandingSnapshot]:
        """Current standings of a division, best rank first"""
        with self._get_session_context(session) as s:
            rows = s.execute(
                select(DivisionStanding)
                .where(DivisionStanding.division_id == division_id, DivisionStanding.season_id == season_id)
                .order_by(DivisionStanding.rank)
            ).scalars().all()
            return [
                StandingSnapshot(
                    division_id=row.division_id,
                    season_id=row.season_id,
                    entity_id=row.entity_id,
                    rank=row.rank,
                    total_points=row.total_points,
                    matches_played=row.matches_played,
                    wins=row.wins,
                    losses=row.losses,
                    sets_won=row.sets_won,
                    sets_lost=row.sets_lost,
                    games_won=row.games_won,
                    games_lost=row.games_lost,
                    head_to_head=json.loads(row.head_to_head or '{}'),
                    is_locked=row.is_locked,
                    last_calculated_at=row.last_calculated_at,
                )
                for row in rows
            ]

    def get_counted_results(self, entity_id: str, division_id: str, season_id: str,
                            session: Optional[Session] = None) -> List[ResultRecord]:
        """Results currently counting toward an entity's total, in sequence order"""
        with self._get_session_context(session) as s:
            rows = s.execute(
                select(MatchResult)
                .where(
                    MatchResult.entity_id == entity_id,
                    MatchResult.division_id == division_id,
                    MatchResult.season_id == season_id,
                    MatchResult.counts_for_standings == True,
                )
                .order_by(MatchResult.result_sequence)
            ).scalars().all()
            return [ResultRecord.from_row(row) for row in rows]


def standing_from_row(row: DivisionStanding) -> StandingRow:
    return StandingRow(
        division_id=row.division_id,
        season_id=row.season_id,
        entity_id=row.entity_id,
        rank=row.rank,
        matches_played=row.matches_played,
        wins=row.wins,
        losses=row.losses,
        total_points=row.total_points,
        counted_matches=row.counted_matches,
        sets_won=row.sets_won,
        sets_lost=row.sets_lost,
        games_won=row.games_won,
        games_lost=row.games_lost,
        head_to_head=json.loads(row.head_to_head or '{}'),
        is_locked=row.is_locked,
    )
