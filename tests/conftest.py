"""Shared pytest fixtures for league engine tests."""
import json
import os
from datetime import datetime, timedelta
from itertools import count
from typing import Generator, List, Optional

os.environ.setdefault('LOG_TO_FILE', 'false')

import pytest

from league_engine.data_models.match import FinalizedMatch, Participant, SideScore
from league_engine.database.database import Database
from league_engine.database.models import AdminPermissionType, AdminUser, GameType, MatchStatus, SportType
from league_engine.utils.entity_locks import EntityLockManager

SEASON = 'season-2025'
DIVISION = 'div-a'
BASE_DATE = datetime(2025, 3, 1, 18, 0, 0)


@pytest.fixture(scope="function")
def database() -> Generator[Database, None, None]:
    """Fresh in-memory database with the default rating parameters published."""
    db = Database('sqlite:///:memory:')
    db.initialize()
    yield db
    db.close()


@pytest.fixture(scope="function")
def file_database(tmp_path) -> Generator[Database, None, None]:
    """File-backed database for tests that write from several threads."""
    db = Database(f"sqlite:///{tmp_path / 'league_engine_test.db'}")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def lock_manager() -> EntityLockManager:
    """Process-local entity locks without Redis."""
    return EntityLockManager(redis_client=None, timeout_seconds=10)


def create_admin(database: Database, admin_id: str = 'admin-1', permissions: Optional[List[str]] = None,
                 is_superadmin: bool = False, is_active: bool = True) -> str:
    with database.transaction() as session:
        session.add(AdminUser(
            id=admin_id,
            name=admin_id.title(),
            is_active=is_active,
            is_superadmin=is_superadmin,
            permissions=json.dumps(permissions or []),
        ))
    return admin_id


@pytest.fixture
def admin(database) -> str:
    """Superadmin able to run every command."""
    return create_admin(database, 'admin-1', is_superadmin=True)


class MatchFactory:
    """Builds valid finalized matches with increasing play dates."""

    def __init__(self, season_id: str = SEASON, division_id: str = DIVISION):
        self.season_id = season_id
        self.division_id = division_id
        self._ids = count(1)

    def singles(self, winner: str, loser: str, sets=(2, 0), games=(12, 4), day: Optional[int] = None,
                division_id: Optional[str] = None, is_walkover: bool = False,
                status: MatchStatus = MatchStatus.COMPLETED, sport_type: SportType = SportType.TENNIS,
                match_id: Optional[str] = None) -> FinalizedMatch:
        return self._build([winner], [loser], GameType.SINGLES, sets, games, day, division_id,
                           is_walkover, status, sport_type, match_id)

    def doubles(self, winners, losers, sets=(2, 1), games=(14, 11), day: Optional[int] = None,
                division_id: Optional[str] = None, is_walkover: bool = False,
                status: MatchStatus = MatchStatus.COMPLETED, sport_type: SportType = SportType.PADEL,
                match_id: Optional[str] = None) -> FinalizedMatch:
        return self._build(list(winners), list(losers), GameType.DOUBLES, sets, games, day, division_id,
                           is_walkover, status, sport_type, match_id)

    def _build(self, winners, losers, game_type, sets, games, day, division_id, is_walkover, status,
               sport_type, match_id) -> FinalizedMatch:
        number = next(self._ids)
        played = BASE_DATE + timedelta(days=day if day is not None else number)
        if is_walkover:
            sets, games = (0, 0), (0, 0)
        participants = tuple(
            [Participant(entity_id=e, team=1, is_winner=True) for e in winners]
            + [Participant(entity_id=e, team=2, is_winner=False) for e in losers]
        )
        return FinalizedMatch(
            match_id=match_id or f"match-{number:03d}",
            division_id=division_id or self.division_id,
            season_id=self.season_id,
            sport_type=sport_type,
            game_type=game_type,
            status=status,
            participants=participants,
            team1=SideScore(sets_won=sets[0], sets_lost=sets[1], games_won=games[0], games_lost=games[1]),
            team2=SideScore(sets_won=sets[1], sets_lost=sets[0], games_won=games[1], games_lost=games[0]),
            date_played=played,
            created_at=played + timedelta(minutes=5),
            is_walkover=is_walkover,
            walkover_reason='no_show' if is_walkover else None,
        )


@pytest.fixture
def matches() -> MatchFactory:
    return MatchFactory()


@pytest.fixture
def all_permissions() -> List[str]:
    return [p.value for p in AdminPermissionType]
