"""
Admin command data models.

An AdminCommand names the acting admin, the command type and a typed payload.
Each command type accepts exactly one payload class.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Union

from league_engine.database.models import AdjustmentType, AdminPermissionType, RecalculationScope
from league_engine.utils.exceptions import ValidationError


class AdminCommandType(Enum):
    GRANT_ADJUSTMENT = "grant_adjustment"
    SUBMIT_RECALC = "submit_recalc"
    PREVIEW_RECALC = "preview_recalc"
    APPLY_RECALC = "apply_recalc"
    LOCK_SEASON = "lock_season"
    UNLOCK_SEASON = "unlock_season"
    SET_LOCK_OVERRIDE = "set_lock_override"
    PUBLISH_PARAMETERS = "publish_parameters"


@dataclass(frozen=True)
class GrantAdjustmentPayload:
    player_rating_id: int
    adjustment_type: AdjustmentType
    new_rating: int
    reason: str


@dataclass(frozen=True)
class SubmitRecalcPayload:
    scope: RecalculationScope
    target_id: str
    season_id: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class RecalcJobPayload:
    """Preview or apply an existing job."""
    job_id: int
    allow_override: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class LockSeasonPayload:
    season_id: str
    snapshot_reference: Optional[str] = None
    create_snapshot: bool = False
    notes: Optional[str] = None


@dataclass(frozen=True)
class UnlockSeasonPayload:
    season_id: str
    notes: Optional[str] = None


@dataclass(frozen=True)
class LockOverridePayload:
    season_id: str
    allowed: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class RatingParameterChanges:
    """Rating parameters to change in the next version; None keeps the active value."""
    initial_rating: Optional[int] = None
    initial_rd: Optional[int] = None
    initial_volatility: Optional[float] = None
    k_factor_new: Optional[int] = None
    k_factor_established: Optional[int] = None
    k_factor_threshold: Optional[int] = None
    singles_weight: Optional[float] = None
    doubles_weight: Optional[float] = None
    one_set_match_weight: Optional[float] = None
    walkover_win_impact: Optional[float] = None
    walkover_loss_impact: Optional[float] = None
    provisional_threshold: Optional[int] = None
    rating_floor: Optional[int] = None
    min_rd: Optional[int] = None
    rd_decay: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass(frozen=True)
class PublishParametersPayload:
    changes: RatingParameterChanges = field(default_factory=RatingParameterChanges)
    reason: Optional[str] = None


AdminPayload = Union[
    GrantAdjustmentPayload, SubmitRecalcPayload, RecalcJobPayload, LockSeasonPayload,
    UnlockSeasonPayload, LockOverridePayload, PublishParametersPayload,
]

PAYLOAD_TYPES = {
    AdminCommandType.GRANT_ADJUSTMENT: GrantAdjustmentPayload,
    AdminCommandType.SUBMIT_RECALC: SubmitRecalcPayload,
    AdminCommandType.PREVIEW_RECALC: RecalcJobPayload,
    AdminCommandType.APPLY_RECALC: RecalcJobPayload,
    AdminCommandType.LOCK_SEASON: LockSeasonPayload,
    AdminCommandType.UNLOCK_SEASON: UnlockSeasonPayload,
    AdminCommandType.SET_LOCK_OVERRIDE: LockOverridePayload,
    AdminCommandType.PUBLISH_PARAMETERS: PublishParametersPayload,
}

REQUIRED_PERMISSIONS = {
    AdminCommandType.GRANT_ADJUSTMENT: AdminPermissionType.ADJUST_RATINGS,
    AdminCommandType.SUBMIT_RECALC: AdminPermissionType.RECALCULATE,
    AdminCommandType.PREVIEW_RECALC: AdminPermissionType.RECALCULATE,
    AdminCommandType.APPLY_RECALC: AdminPermissionType.RECALCULATE,
    AdminCommandType.LOCK_SEASON: AdminPermissionType.LOCK_SEASONS,
    AdminCommandType.UNLOCK_SEASON: AdminPermissionType.LOCK_SEASONS,
    AdminCommandType.SET_LOCK_OVERRIDE: AdminPermissionType.LOCK_SEASONS,
    AdminCommandType.PUBLISH_PARAMETERS: AdminPermissionType.MANAGE_PARAMETERS,
}


@dataclass(frozen=True)
class AdminCommand:
    """A control-plane instruction from an admin."""
    type: AdminCommandType
    actor: str
    payload: AdminPayload

    def __post_init__(self):
        expected = PAYLOAD_TYPES[self.type]
        if not isinstance(self.payload, expected):
            raise ValidationError(
                f"{self.type.value} expects {expected.__name__}, got {type(self.payload).__name__}"
            )

    @property
    def required_permission(self) -> AdminPermissionType:
        return REQUIRED_PERMISSIONS[self.type]

    @property
    def target(self) -> Optional[str]:
        """Identifier of the object the command acts on, for audit logging"""
        for name in ('target_id', 'job_id', 'player_rating_id', 'season_id'):
            value = getattr(self.payload, name, None)
            if value is not None:
                return str(value)
        return None
