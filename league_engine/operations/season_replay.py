"""
Season Replay Module

Pure, in-memory replay of a season's history. Used by recalculation to
rebuild results, standings and ratings in scratch storage before anything
live is touched.

The replay reuses the live code paths:
- result points come from the recorder's scoring rules
- counted flags and ranks come from the standings computation
- rating movements come from RatingCalculator.rate_match

Given the same results, adjustments and parameters snapshot, a replay always
produces the same outcome.
"""

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from league_engine.data_models.ratings import RatingChange, RatingParametersSnapshot, RatingState
from league_engine.data_models.standings import DivisionStandings, ResultRecord
from league_engine.database.models import RatingChangeReason
from league_engine.operations.match_result_recorder import rescore
from league_engine.operations.standings_aggregator import compute_division_standings
from league_engine.utils.logger import setup_logger
from league_engine.utils.rating_math import RatedMatch, RatingCalculator
from league_engine.utils.selection_policies import SelectionStrategy

logger = setup_logger(__name__)


@dataclass(frozen=True)
class AdjustmentEvent:
    """A recorded manual adjustment, replayed as a relative rating change"""
    adjustment_id: int
    player_id: str
    delta: int
    reason: RatingChangeReason
    effective_at: datetime
    notes: Optional[str] = None


@dataclass
class SeasonReplayOutcome:
    results: List[ResultRecord]
    standings: Dict[str, DivisionStandings]
    ratings: Dict[str, RatingState]
    history: Dict[str, List[RatingChange]] = field(default_factory=dict)


class SeasonReplay:
    """
    Replays a season from its raw results.

    Args for replay():
        results: Every result row of the season
        divisions: Divisions whose standings should be rebuilt
        adjustments: Manual adjustments of the season
        params: Parameters snapshot for the whole replay
        strategy: Best-K selection strategy
        is_locked: Lock state mirrored onto standings
        max_workers: Threads used to rebuild independent divisions
        checkpoint: Called between units of work; may raise to abort
    """

    @staticmethod
    def resequence(results: Iterable[ResultRecord]) -> List[ResultRecord]:
        """Number each entity's results 1..n by date played, then match creation"""
        by_entity: Dict[str, List[ResultRecord]] = defaultdict(list)
        for result in results:
            by_entity[result.entity_id].append(result)

        resequenced = []
        for entity_id in sorted(by_entity):
            ordered = sorted(by_entity[entity_id], key=lambda r: r.chronological_key)
            resequenced.extend(r.with_sequence(i) for i, r in enumerate(ordered, start=1))
        return resequenced

    @staticmethod
    def affected_players(results: Sequence[ResultRecord], match_id: str) -> Set[str]:
        """
        Players whose ratings depend on one match.

        The match's participants are affected, and so is anyone who meets an
        affected player in a match played later.
        """
        by_match: Dict[str, List[ResultRecord]] = defaultdict(list)
        for result in results:
            by_match[result.match_id].append(result)
        if match_id not in by_match:
            return set()

        start = by_match[match_id][0].chronological_key
        affected = {r.entity_id for r in by_match[match_id]}
        ordered = sorted(by_match.values(), key=lambda match_results: match_results[0].chronological_key)
        for match_results in ordered:
            if match_results[0].chronological_key <= start:
                continue
            players = {r.entity_id for r in match_results}
            if players & affected:
                affected |= players
        return affected

    @staticmethod
    def replay_ratings(results: Sequence[ResultRecord], adjustments: Sequence[AdjustmentEvent],
                       params: RatingParametersSnapshot,
                       checkpoint=None) -> Tuple[Dict[str, RatingState], Dict[str, List[RatingChange]]]:
        """
        Rate every match of the season in chronological order.

        Adjustments are interleaved by their effective time and replayed as
        their recorded delta, never below the rating floor.
        """
        by_match: Dict[str, List[ResultRecord]] = defaultdict(list)
        for result in results:
            by_match[result.match_id].append(result)

        events = []
        for match_id, match_results in by_match.items():
            rated = RatedMatch.from_results(match_results)
            events.append(((rated.date_played, 0, rated.match_created_at, match_id), rated))
        for adjustment in adjustments:
            events.append(((adjustment.effective_at, 1, adjustment.effective_at, str(adjustment.adjustment_id)),
                           adjustment))
        events.sort(key=lambda event: event[0])

        states: Dict[str, RatingState] = {}
        history: Dict[str, List[RatingChange]] = defaultdict(list)
        for _, event in events:
            if checkpoint:
                checkpoint()
            if isinstance(event, RatedMatch):
                for player_id in event.players:
                    states.setdefault(player_id, RatingState.initial(player_id, params))
                for change in RatingCalculator.rate_match(states, event, params):
                    states[change.player_id] = change.after
                    history[change.player_id].append(change)
            else:
                before = states.setdefault(event.player_id, RatingState.initial(event.player_id, params))
                after = before.with_rating(max(before.rating + event.delta, params.rating_floor),
                                           event.effective_at)
                states[event.player_id] = after
                history[event.player_id].append(RatingChange(
                    player_id=event.player_id,
                    before=before,
                    after=after,
                    reason=event.reason,
                    effective_at=event.effective_at,
                    notes=event.notes,
                    adjustment_id=event.adjustment_id,
                ))

        return states, dict(history)

    @staticmethod
    def replay(results: Sequence[ResultRecord], divisions: Sequence[str], season_id: str,
               adjustments: Sequence[AdjustmentEvent], params: RatingParametersSnapshot,
               strategy: SelectionStrategy, is_locked: bool = False, max_workers: int = 1,
               checkpoint=None) -> SeasonReplayOutcome:
        rebuilt = SeasonReplay.resequence(rescore(r) for r in results)

        by_division: Dict[str, List[ResultRecord]] = defaultdict(list)
        for result in rebuilt:
            by_division[result.division_id].append(result)

        def rebuild_division(division_id: str) -> DivisionStandings:
            if checkpoint:
                checkpoint()
            return compute_division_standings(
                by_division.get(division_id, []), division_id, season_id, strategy, is_locked
            )

        ordered_divisions = sorted(set(divisions))
        if max_workers > 1 and len(ordered_divisions) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                computed = list(executor.map(rebuild_division, ordered_divisions))
        else:
            computed = [rebuild_division(division_id) for division_id in ordered_divisions]
        standings = {s.division_id: s for s in computed}

        # Carry the counted flags of rebuilt divisions back onto the result list
        flags = {
            (r.entity_id, r.match_id): r.counts_for_standings
            for s in computed for entity_results in s.results.values() for r in entity_results
        }
        rebuilt = [
            replace(r, counts_for_standings=flags[(r.entity_id, r.match_id)])
            if (r.entity_id, r.match_id) in flags else r
            for r in rebuilt
        ]

        ratings, history = SeasonReplay.replay_ratings(rebuilt, adjustments, params, checkpoint)
        logger.debug(
            f"Replayed season {season_id}: {len(rebuilt)} results, {len(standings)} divisions, "
            f"{len(ratings)} ratings"
        )
        return SeasonReplayOutcome(results=rebuilt, standings=standings, ratings=ratings, history=history)
