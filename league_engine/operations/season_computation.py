from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from league_engine.database.models import SeasonComputation
from league_engine.utils.time_utils import utc_now


def mark_season_computed(session: Session, season_id: str, source: str) -> datetime:
    """Stamp the season's last successful computation inside the caller's transaction"""
    now = utc_now()
    row = session.get(SeasonComputation, season_id)
    if row is None:
        row = SeasonComputation(season_id=season_id, last_computed_at=now, last_source=source)
        session.add(row)
    else:
        row.last_computed_at = now
        row.last_source = source
    return now


def get_last_computed_at(session: Session, season_id: str) -> Optional[datetime]:
    row = session.get(SeasonComputation, season_id)
    return row.last_computed_at if row is not None else None
