"""
Result and standings data models.

ResultRecord is a detached copy of a match_results row so the scoring,
selection and ranking code can run the same way over live rows and over
replayed scratch data.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Dict, List, Optional

from league_engine.database.models import GameType, SportType


@dataclass(frozen=True)
class ResultRecord:
    """Detached view of one MatchResult row."""
    match_id: str
    division_id: str
    season_id: str
    entity_id: str
    opponent_id: Optional[str]
    team: int
    sport_type: SportType
    game_type: GameType
    is_win: bool
    is_walkover: bool
    walkover_reason: Optional[str]
    participation_points: int
    sets_won_points: int
    win_bonus_points: int
    match_points: int
    margin: int
    sets_won: int
    sets_lost: int
    games_won: int
    games_lost: int
    date_played: datetime
    match_created_at: datetime
    result_sequence: int = 0
    counts_for_standings: bool = False
    row_id: Optional[int] = None

    # Columns copied to and from MatchResult rows; row_id maps to the primary key
    COLUMN_FIELDS = (
        'match_id', 'division_id', 'season_id', 'entity_id', 'opponent_id', 'team',
        'sport_type', 'game_type', 'is_win', 'is_walkover', 'walkover_reason',
        'participation_points', 'sets_won_points', 'win_bonus_points', 'match_points', 'margin',
        'sets_won', 'sets_lost', 'games_won', 'games_lost',
        'date_played', 'match_created_at', 'result_sequence', 'counts_for_standings',
    )

    @classmethod
    def from_row(cls, row) -> 'ResultRecord':
        values = {name: getattr(row, name) for name in cls.COLUMN_FIELDS}
        return cls(row_id=row.id, **values)

    def column_values(self) -> dict:
        return {name: getattr(self, name) for name in self.COLUMN_FIELDS}

    def with_sequence(self, sequence: int) -> 'ResultRecord':
        return replace(self, result_sequence=sequence)

    def with_counted(self, counted: bool) -> 'ResultRecord':
        return replace(self, counts_for_standings=counted)

    @property
    def is_one_set(self) -> bool:
        return not self.is_walkover and self.sets_won + self.sets_lost == 1

    @property
    def chronological_key(self):
        """Order used for sequence numbers and rating replay"""
        return (self.date_played, self.match_created_at, self.match_id)


@dataclass(frozen=True)
class StandingRow:
    """Computed standing for one entity in one division and season."""
    division_id: str
    season_id: str
    entity_id: str
    rank: int
    matches_played: int
    wins: int
    losses: int
    total_points: int
    counted_matches: int
    sets_won: int
    sets_lost: int
    games_won: int
    games_lost: int
    head_to_head: Dict[str, Dict[str, int]] = field(default_factory=dict)
    is_locked: bool = False

    @property
    def games_differential(self) -> int:
        return self.games_won - self.games_lost

    def comparable(self) -> dict:
        """Column values that define the standing, used for diffs and idempotency"""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values['head_to_head'] = {k: dict(v) for k, v in sorted(self.head_to_head.items())}
        return values


@dataclass(frozen=True)
class StandingSnapshot:
    """Outbound standing, as consumed by seeding and leaderboard readers."""
    division_id: str
    season_id: str
    entity_id: str
    rank: int
    total_points: int
    matches_played: int
    wins: int
    losses: int
    sets_won: int
    sets_lost: int
    games_won: int
    games_lost: int
    head_to_head: Dict[str, Dict[str, int]]
    is_locked: bool
    last_calculated_at: Optional[datetime]


@dataclass(frozen=True)
class DivisionStandings:
    """Ranked standings for one division."""
    division_id: str
    season_id: str
    rows: List[StandingRow]
    results: Dict[str, List[ResultRecord]]
