"""
Recalculation data models for the admin review surface.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from league_engine.database.models import RecalculationScope, RecalculationStatus


@dataclass(frozen=True)
class RecalculationResult:
    """Outbound view of a recalculation job."""
    job_id: int
    scope: RecalculationScope
    target_id: str
    season_id: str
    status: RecalculationStatus
    affected_players_count: int
    changes_preview: Optional[Dict[str, Any]]
    error_message: Optional[str] = None
    preview_generated_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job) -> 'RecalculationResult':
        return cls(
            job_id=job.id,
            scope=job.scope,
            target_id=job.target_id,
            season_id=job.season_id,
            status=job.status,
            affected_players_count=job.affected_players_count,
            changes_preview=json.loads(job.changes_preview) if job.changes_preview else None,
            error_message=job.error_message,
            preview_generated_at=job.preview_generated_at,
            applied_at=job.applied_at,
            failed_at=job.failed_at,
        )
