"""
Inbound match data models.

Provides immutable, closed data transfer objects for finalized matches handed to the
engine by the match lifecycle subsystem.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from league_engine.database.models import GameType, MatchStatus, SportType
from league_engine.utils.exceptions import ValidationError
from league_engine.utils.time_utils import to_naive_utc

TEAMS = (1, 2)

# Raw score lines accepted by FinalizedMatch.from_dict in place of side totals
SCORE_LINE_KEYS = ('set_scores', 'game_scores', 'third_set_format')


@dataclass(frozen=True)
class Participant:
    """One entity on one side of a match."""
    entity_id: str
    team: int
    is_winner: bool


@dataclass(frozen=True)
class SideScore:
    """Set and game totals for one side."""
    sets_won: int = 0
    sets_lost: int = 0
    games_won: int = 0
    games_lost: int = 0

    @property
    def total_sets(self) -> int:
        return self.sets_won + self.sets_lost

    def mirrored(self) -> 'SideScore':
        return SideScore(
            sets_won=self.sets_lost,
            sets_lost=self.sets_won,
            games_won=self.games_lost,
            games_lost=self.games_won,
        )


@dataclass(frozen=True)
class FinalizedMatch:
    """A match in a terminal state, as delivered to the engine."""
    match_id: str
    division_id: str
    season_id: str
    sport_type: SportType
    game_type: GameType
    status: MatchStatus
    participants: Tuple[Participant, ...]
    team1: SideScore
    team2: SideScore
    date_played: datetime
    created_at: Optional[datetime] = None
    is_walkover: bool = False
    walkover_reason: Optional[str] = None

    def __post_init__(self):
        # Matches are ordered by creation time after date played
        if self.created_at is None:
            object.__setattr__(self, 'created_at', self.date_played)

    def side(self, team: int) -> SideScore:
        return self.team1 if team == 1 else self.team2

    def members(self, team: int) -> Tuple[Participant, ...]:
        return tuple(p for p in self.participants if p.team == team)

    @property
    def winning_team(self) -> Optional[int]:
        winners = {p.team for p in self.participants if p.is_winner}
        return winners.pop() if len(winners) == 1 else None

    def validate(self):
        """
        Check structural consistency of the match.

        Raises:
            ValidationError: If any participant, side or count is inconsistent
        """
        for name in ('match_id', 'division_id', 'season_id'):
            if not getattr(self, name):
                raise ValidationError(f"Match is missing {name}")

        entity_ids = [p.entity_id for p in self.participants]
        if any(not entity_id for entity_id in entity_ids):
            raise ValidationError(f"Match {self.match_id} has a participant without an entity id")
        if len(set(entity_ids)) != len(entity_ids):
            raise ValidationError(f"Match {self.match_id} lists an entity more than once")

        expected = self.game_type.players_per_side
        for participant in self.participants:
            if participant.team not in TEAMS:
                raise ValidationError(f"Match {self.match_id} has invalid team {participant.team}")
        for team in TEAMS:
            members = self.members(team)
            if len(members) != expected:
                raise ValidationError(
                    f"Match {self.match_id} team {team} has {len(members)} participants, "
                    f"{self.game_type.value} requires {expected}"
                )
            if len({p.is_winner for p in members}) != 1:
                raise ValidationError(f"Match {self.match_id} team {team} has mixed winner flags")

        if self.status.is_countable and self.winning_team is None:
            raise ValidationError(f"Match {self.match_id} must have exactly one winning team")

        for team in TEAMS:
            side = self.side(team)
            if min(side.sets_won, side.sets_lost, side.games_won, side.games_lost) < 0:
                raise ValidationError(f"Match {self.match_id} team {team} has negative counts")
        if self.team1.mirrored() != self.team2:
            raise ValidationError(f"Match {self.match_id} side totals do not mirror each other")

        if self.status.is_countable and not self.is_walkover:
            winner = self.side(self.winning_team)
            if winner.sets_won <= winner.sets_lost:
                raise ValidationError(
                    f"Match {self.match_id} winner has {winner.sets_won} sets against {winner.sets_lost}"
                )

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'FinalizedMatch':
        """
        Build a match from a plain payload, rejecting unknown keys.

        Args:
            payload: Mapping with the dataclass field names; enums as their values,
                datetimes as datetime or ISO-8601 strings, sides as mappings.
                Instead of team1/team2 a payload may carry score lines:
                set_scores (tennis, padel) with an optional third_set_format,
                or game_scores (pickleball)

        Returns:
            FinalizedMatch

        Raises:
            ValidationError: If keys are unknown or values cannot be parsed
        """
        known = {f.name for f in fields(cls)} | set(SCORE_LINE_KEYS)
        unknown = set(payload) - known
        if unknown:
            raise ValidationError(f"Unknown match fields: {', '.join(sorted(unknown))}")

        try:
            participants = tuple(
                Participant(
                    entity_id=str(p['entity_id']),
                    team=int(p['team']),
                    is_winner=bool(p['is_winner']),
                )
                for p in payload['participants']
            )
            sport_type = SportType(payload['sport_type'])
            team1, team2 = cls._side_totals(payload, sport_type)
            return cls(
                match_id=str(payload['match_id']),
                division_id=str(payload['division_id']),
                season_id=str(payload['season_id']),
                sport_type=sport_type,
                game_type=GameType(payload['game_type']),
                status=MatchStatus(payload['status']),
                participants=participants,
                team1=team1,
                team2=team2,
                date_played=to_naive_utc(payload['date_played']),
                created_at=to_naive_utc(payload.get('created_at')),
                is_walkover=bool(payload.get('is_walkover', False)),
                walkover_reason=payload.get('walkover_reason'),
            )
        except KeyError as e:
            raise ValidationError(f"Match payload is missing {e}")
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid match payload: {e}")

    @staticmethod
    def _side_totals(payload: Dict[str, Any], sport_type: SportType) -> Tuple[SideScore, SideScore]:
        """Side totals given directly, or derived from the payload's score lines"""
        if 'set_scores' not in payload and 'game_scores' not in payload:
            return SideScore(**payload.get('team1', {})), SideScore(**payload.get('team2', {}))
        if 'team1' in payload or 'team2' in payload:
            raise ValidationError("Match payload has both side totals and score lines")

        # score_parsing builds on SideScore
        from league_engine.utils import score_parsing

        if sport_type == SportType.PICKLEBALL:
            if 'game_scores' not in payload:
                raise ValidationError("Pickleball score lines must be given as game_scores")
            outcome = score_parsing.parse_pickleball_outcome(
                [score_parsing.GameScore(**game) for game in payload['game_scores']]
            )
        else:
            if 'set_scores' not in payload:
                raise ValidationError(f"{sport_type.value} score lines must be given as set_scores")
            outcome = score_parsing.parse_tennis_padel_outcome(
                [score_parsing.SetScore(**score) for score in payload['set_scores']],
                score_parsing.ThirdSetFormat(payload.get('third_set_format', 'match_tiebreak')),
            )
        return outcome.team1, outcome.team2
