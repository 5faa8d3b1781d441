"""
Season export service.

Builds a point-in-time export of a season's standings and ratings, either
stored as a SeasonSnapshot (taken when a season is locked, or on demand) or
rendered as JSON / CSV for downstream consumers.
"""

import csv
import io
import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from league_engine.database.models import DivisionStanding, PlayerRating, SeasonLock, SeasonSnapshot
from league_engine.services.base import BaseService
from league_engine.utils.exceptions import ValidationError
from league_engine.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    'division_id', 'rank', 'entity_id', 'total_points', 'matches_played', 'wins', 'losses',
    'sets_won', 'sets_lost', 'games_won', 'games_lost',
    'rating', 'rating_deviation', 'is_provisional',
]


class SeasonExportService(BaseService):
    """Exports season standings and ratings."""

    @contextmanager
    def _get_session_context(self, session: Optional[Session] = None):
        if session is not None:
            yield session
        else:
            with self.get_session() as new_session:
                yield new_session

    def build_season_data(self, session: Session, season_id: str) -> Dict[str, Any]:
        """Gather the season's standings, ratings and lock state"""
        standings = session.execute(
            select(DivisionStanding)
            .where(DivisionStanding.season_id == season_id)
            .order_by(DivisionStanding.division_id, DivisionStanding.rank)
        ).scalars().all()
        ratings = session.execute(
            select(PlayerRating)
            .where(PlayerRating.season_id == season_id)
            .order_by(PlayerRating.player_id)
        ).scalars().all()
        lock = session.get(SeasonLock, season_id)

        return {
            'season_id': season_id,
            'generated_at': utc_now().isoformat(),
            'is_locked': bool(lock and lock.is_locked),
            'standings': [
                {
                    'division_id': s.division_id,
                    'rank': s.rank,
                    'entity_id': s.entity_id,
                    'total_points': s.total_points,
                    'matches_played': s.matches_played,
                    'wins': s.wins,
                    'losses': s.losses,
                    'sets_won': s.sets_won,
                    'sets_lost': s.sets_lost,
                    'games_won': s.games_won,
                    'games_lost': s.games_lost,
                }
                for s in standings
            ],
            'ratings': [
                {
                    'player_id': r.player_id,
                    'rating': r.current_rating,
                    'rating_deviation': r.rating_deviation,
                    'matches_played': r.matches_played,
                    'is_provisional': r.is_provisional,
                    'peak_rating': r.peak_rating,
                    'lowest_rating': r.lowest_rating,
                }
                for r in ratings
            ],
        }

    def create_snapshot(self, season_id: str, admin_id: str, snapshot_type: str = 'manual',
                        description: Optional[str] = None, session: Optional[Session] = None) -> str:
        """
        Store a snapshot of the season.

        Returns:
            Reference string for the stored snapshot
        """
        with self._get_session_context(session) as s:
            data = self.build_season_data(s, season_id)
            snapshot = SeasonSnapshot(
                season_id=season_id,
                snapshot_type=snapshot_type,
                description=description,
                data=json.dumps(data),
                created_by_admin=admin_id,
            )
            s.add(snapshot)
            s.flush()
            logger.info(f"Created {snapshot_type} snapshot {snapshot.id} for season {season_id}: "
                        f"{len(data['standings'])} standings, {len(data['ratings'])} ratings")
            return snapshot.reference

    def export_season(self, season_id: str, fmt: str = 'json', session: Optional[Session] = None) -> str:
        """
        Render the season as JSON or CSV.

        CSV has one line per standing, joined with the entity's rating when the
        entity is a rated player.

        Raises:
            ValidationError: If the format is not supported
        """
        if fmt not in ('json', 'csv'):
            raise ValidationError(f"Unsupported export format '{fmt}'")

        with self._get_session_context(session) as s:
            data = self.build_season_data(s, season_id)

        if fmt == 'json':
            return json.dumps(data, indent=2)

        ratings = {r['player_id']: r for r in data['ratings']}
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS)
        writer.writeheader()
        for standing in data['standings']:
            rating = ratings.get(standing['entity_id'], {})
            writer.writerow({
                **standing,
                'rating': rating.get('rating', ''),
                'rating_deviation': rating.get('rating_deviation', ''),
                'is_provisional': rating.get('is_provisional', ''),
            })
        return buffer.getvalue()
