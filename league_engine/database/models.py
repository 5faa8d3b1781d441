from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, Float,
    ForeignKey, Enum as SQLEnum, UniqueConstraint, CheckConstraint, Index, event, inspect, text
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from enum import Enum

from league_engine.utils.exceptions import StateError

Base = declarative_base()

class SportType(Enum):
    TENNIS = "tennis"
    PADEL = "padel"
    PICKLEBALL = "pickleball"

class GameType(Enum):
    SINGLES = "singles"
    DOUBLES = "doubles"

    @property
    def players_per_side(self) -> int:
        return 1 if self is GameType.SINGLES else 2

class MatchStatus(Enum):
    SCHEDULED = "scheduled"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    VOID = "void"

    @property
    def is_terminal(self) -> bool:
        return self in (MatchStatus.COMPLETED, MatchStatus.CANCELLED, MatchStatus.VOID)

    @property
    def is_countable(self) -> bool:
        return self is MatchStatus.COMPLETED

class RatingChangeReason(Enum):
    MATCH_WIN = "match_win"
    MATCH_LOSS = "match_loss"
    WALKOVER_WIN = "walkover_win"
    WALKOVER_LOSS = "walkover_loss"
    ADJUSTMENT = "adjustment"
    MIGRATION = "migration"

class AdjustmentType(Enum):
    CORRECTION = "correction"
    APPEAL_RESOLUTION = "appeal_resolution"
    ADMIN_OVERRIDE = "admin_override"
    MIGRATION = "migration"

class RecalculationScope(Enum):
    MATCH = "match"
    PLAYER = "player"
    DIVISION = "division"
    SEASON = "season"

class RecalculationStatus(Enum):
    PENDING = "pending"
    PREVIEW_READY = "preview_ready"
    APPLIED = "applied"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RecalculationStatus.APPLIED, RecalculationStatus.FAILED)

class AdminPermissionType(Enum):
    ADJUST_RATINGS = "adjust_ratings"
    RECALCULATE = "recalculate"
    LOCK_SEASONS = "lock_seasons"
    MANAGE_PARAMETERS = "manage_parameters"

# ============================================================================
# Admin
# ============================================================================

class AdminUser(Base):
    __tablename__ = 'admin_users'

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_superadmin = Column(Boolean, default=False, nullable=False)
    permissions = Column(Text, default='[]', nullable=False)  # JSON list of AdminPermissionType values

    created_at = Column(DateTime, default=func.now())

    def __repr__(self):
        return f"<AdminUser(id='{self.id}', name='{self.name}', active={self.is_active})>"

class AdminAuditLog(Base):
    __tablename__ = 'admin_audit_log'

    id = Column(Integer, primary_key=True)
    admin_id = Column(String(64), ForeignKey('admin_users.id'), nullable=False, index=True)
    action_type = Column(String(50), nullable=False)
    target_type = Column(String(50))
    target_id = Column(String(64))
    details = Column(Text, default='{}')
    reason = Column(Text)
    affected_players_count = Column(Integer, default=0)

    created_at = Column(DateTime, default=func.now())

    admin = relationship("AdminUser")

    def __repr__(self):
        return f"<AdminAuditLog(action='{self.action_type}', admin='{self.admin_id}', target={self.target_type}:{self.target_id})>"

# ============================================================================
# Match results and standings
# ============================================================================

class MatchResult(Base):
    """
    Scored result of one countable match for one participant.

    Scored columns are written once by the recorder and only rewritten by a
    recalculation replay. counts_for_standings is maintained by the standings
    aggregator.
    """
    __tablename__ = 'match_results'

    id = Column(Integer, primary_key=True)
    match_id = Column(String(64), nullable=False, index=True)
    division_id = Column(String(64), nullable=False, index=True)
    season_id = Column(String(64), nullable=False, index=True)
    entity_id = Column(String(64), nullable=False, index=True)
    opponent_id = Column(String(64))
    team = Column(Integer, nullable=False)

    sport_type = Column(SQLEnum(SportType), nullable=False)
    game_type = Column(SQLEnum(GameType), nullable=False)
    is_win = Column(Boolean, nullable=False)
    is_walkover = Column(Boolean, default=False, nullable=False)
    walkover_reason = Column(String(255))

    # Point breakdown
    participation_points = Column(Integer, nullable=False)
    sets_won_points = Column(Integer, nullable=False)
    win_bonus_points = Column(Integer, nullable=False)
    match_points = Column(Integer, nullable=False)
    margin = Column(Integer, nullable=False)

    sets_won = Column(Integer, default=0, nullable=False)
    sets_lost = Column(Integer, default=0, nullable=False)
    games_won = Column(Integer, default=0, nullable=False)
    games_lost = Column(Integer, default=0, nullable=False)

    date_played = Column(DateTime, nullable=False)
    match_created_at = Column(DateTime, nullable=False)
    counts_for_standings = Column(Boolean, default=False, nullable=False)
    result_sequence = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=func.now())

    __table_args__ = (
        UniqueConstraint('match_id', 'entity_id', name='uq_match_result_entity'),
        UniqueConstraint('season_id', 'entity_id', 'result_sequence', name='uq_match_result_sequence'),
        CheckConstraint('match_points = participation_points + sets_won_points + win_bonus_points',
                        name='ck_match_points_sum'),
        Index('idx_match_results_standings', 'division_id', 'season_id', 'entity_id'),
    )

    def __repr__(self):
        return f"<MatchResult(match='{self.match_id}', entity='{self.entity_id}', points={self.match_points}, seq={self.result_sequence})>"

class DivisionStanding(Base):
    __tablename__ = 'division_standings'

    id = Column(Integer, primary_key=True)
    division_id = Column(String(64), nullable=False)
    season_id = Column(String(64), nullable=False, index=True)
    entity_id = Column(String(64), nullable=False)

    rank = Column(Integer, nullable=False)
    matches_played = Column(Integer, default=0, nullable=False)
    wins = Column(Integer, default=0, nullable=False)
    losses = Column(Integer, default=0, nullable=False)
    total_points = Column(Integer, default=0, nullable=False)
    counted_matches = Column(Integer, default=0, nullable=False)

    sets_won = Column(Integer, default=0, nullable=False)
    sets_lost = Column(Integer, default=0, nullable=False)
    games_won = Column(Integer, default=0, nullable=False)
    games_lost = Column(Integer, default=0, nullable=False)

    # JSON: {opponent_id: {"wins": n, "losses": m}}
    head_to_head = Column(Text, default='{}', nullable=False)
    is_locked = Column(Boolean, default=False, nullable=False)

    last_calculated_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint('division_id', 'season_id', 'entity_id', name='uq_division_standing'),
    )

    @property
    def games_differential(self) -> int:
        return self.games_won - self.games_lost

    def __repr__(self):
        return f"<DivisionStanding(division='{self.division_id}', entity='{self.entity_id}', rank={self.rank}, points={self.total_points})>"

# ============================================================================
# Ratings
# ============================================================================

class RatingParameters(Base):
    """
    One published version of the rating parameters.

    Parameter columns are frozen after insert; publishing a new version inserts
    a new row and only flips is_active on the previous one.
    """
    __tablename__ = 'rating_parameters'

    MUTABLE_FIELDS = frozenset({'is_active'})

    id = Column(Integer, primary_key=True)
    version = Column(Integer, nullable=False, unique=True)
    is_active = Column(Boolean, default=False, nullable=False)

    initial_rating = Column(Integer, nullable=False)
    initial_rd = Column(Integer, nullable=False)
    initial_volatility = Column(Float, nullable=False)
    k_factor_new = Column(Integer, nullable=False)
    k_factor_established = Column(Integer, nullable=False)
    k_factor_threshold = Column(Integer, nullable=False)
    singles_weight = Column(Float, nullable=False)
    doubles_weight = Column(Float, nullable=False)
    one_set_match_weight = Column(Float, nullable=False)
    walkover_win_impact = Column(Float, nullable=False)
    walkover_loss_impact = Column(Float, nullable=False)
    provisional_threshold = Column(Integer, nullable=False)
    rating_floor = Column(Integer, nullable=False)
    min_rd = Column(Integer, nullable=False)
    rd_decay = Column(Float, nullable=False)

    effective_from = Column(DateTime, nullable=False)
    created_by_admin = Column(String(64))
    created_at = Column(DateTime, default=func.now())

    __table_args__ = (
        Index('uq_rating_parameters_active', 'is_active', unique=True,
              sqlite_where=text('is_active = 1'), postgresql_where=text('is_active')),
        CheckConstraint('provisional_threshold >= 0', name='ck_provisional_threshold'),
        CheckConstraint('min_rd > 0', name='ck_min_rd'),
        CheckConstraint('rd_decay > 0 AND rd_decay <= 1', name='ck_rd_decay'),
    )

    def __repr__(self):
        return f"<RatingParameters(version={self.version}, active={self.is_active})>"

class PlayerRating(Base):
    __tablename__ = 'player_ratings'

    id = Column(Integer, primary_key=True)
    player_id = Column(String(64), nullable=False, index=True)
    season_id = Column(String(64), nullable=False, index=True)

    current_rating = Column(Integer, nullable=False)
    rating_deviation = Column(Integer, nullable=False)
    volatility = Column(Float, nullable=False)
    matches_played = Column(Integer, default=0, nullable=False)
    is_provisional = Column(Boolean, default=True, nullable=False)

    peak_rating = Column(Integer, nullable=False)
    peak_rating_date = Column(DateTime)
    lowest_rating = Column(Integer, nullable=False)
    last_match_at = Column(DateTime)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    history = relationship("RatingHistory", back_populates="player_rating",
                           order_by="RatingHistory.id")

    __table_args__ = (
        UniqueConstraint('player_id', 'season_id', name='uq_player_rating_season'),
    )

    def __repr__(self):
        return f"<PlayerRating(player='{self.player_id}', season='{self.season_id}', rating={self.current_rating}, rd={self.rating_deviation})>"

class RatingHistory(Base):
    """
    Append-only rating change log.

    Rows are never deleted or edited; a recalculation marks the rows it
    replaces as superseded and appends the replayed rows.
    """
    __tablename__ = 'rating_history'

    MUTABLE_FIELDS = frozenset({'superseded_at', 'superseded_by_recalculation_id'})

    id = Column(Integer, primary_key=True)
    player_rating_id = Column(Integer, ForeignKey('player_ratings.id'), nullable=False, index=True)
    match_id = Column(String(64), index=True)

    rating_before = Column(Integer, nullable=False)
    rating_after = Column(Integer, nullable=False)
    delta = Column(Integer, nullable=False)
    rd_before = Column(Integer, nullable=False)
    rd_after = Column(Integer, nullable=False)
    reason = Column(SQLEnum(RatingChangeReason), nullable=False)
    notes = Column(Text)

    parameters_version = Column(Integer)
    recalculation_id = Column(Integer, ForeignKey('rating_recalculations.id'))
    effective_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=func.now())

    superseded_at = Column(DateTime)
    superseded_by_recalculation_id = Column(Integer, ForeignKey('rating_recalculations.id'))

    player_rating = relationship("PlayerRating", back_populates="history")

    def __repr__(self):
        return f"<RatingHistory(rating_id={self.player_rating_id}, delta={self.delta}, reason={self.reason.value if self.reason else None})>"

class RatingAdjustment(Base):
    __tablename__ = 'rating_adjustments'

    id = Column(Integer, primary_key=True)
    player_rating_id = Column(Integer, ForeignKey('player_ratings.id'), nullable=False, index=True)
    admin_id = Column(String(64), ForeignKey('admin_users.id'), nullable=False)
    rating_history_id = Column(Integer, ForeignKey('rating_history.id'), nullable=False, unique=True)

    adjustment_type = Column(SQLEnum(AdjustmentType), nullable=False)
    rating_before = Column(Integer, nullable=False)
    rating_after = Column(Integer, nullable=False)
    delta = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    notified = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, nullable=False)

    player_rating = relationship("PlayerRating")
    admin = relationship("AdminUser")
    rating_history = relationship("RatingHistory", foreign_keys=[rating_history_id])

    def __repr__(self):
        return f"<RatingAdjustment(rating_id={self.player_rating_id}, type={self.adjustment_type.value}, delta={self.delta})>"

class RatingRecalculation(Base):
    __tablename__ = 'rating_recalculations'

    id = Column(Integer, primary_key=True)
    scope = Column(SQLEnum(RecalculationScope), nullable=False)
    target_id = Column(String(64), nullable=False)
    season_id = Column(String(64), nullable=False, index=True)
    status = Column(SQLEnum(RecalculationStatus), default=RecalculationStatus.PENDING, nullable=False)

    # Set while the job is non-terminal; unique so one open job per target
    active_key = Column(String(200), unique=True)

    requested_by_admin = Column(String(64), ForeignKey('admin_users.id'))
    affected_players_count = Column(Integer, default=0, nullable=False)
    changes_preview = Column(Text)  # JSON
    preview_checksum = Column(String(64))
    parameters_version = Column(Integer)

    created_at = Column(DateTime, default=func.now())
    preview_generated_at = Column(DateTime)
    applied_at = Column(DateTime)
    failed_at = Column(DateTime)
    error_message = Column(Text)

    @staticmethod
    def build_active_key(scope: RecalculationScope, target_id: str, season_id: str) -> str:
        return f"{scope.value}:{season_id}:{target_id}"

    def __repr__(self):
        return f"<RatingRecalculation(id={self.id}, scope={self.scope.value}, target='{self.target_id}', status={self.status.value})>"

# ============================================================================
# Season control
# ============================================================================

class SeasonLock(Base):
    __tablename__ = 'season_locks'

    season_id = Column(String(64), primary_key=True)
    is_locked = Column(Boolean, default=False, nullable=False)
    locked_by_admin = Column(String(64), ForeignKey('admin_users.id'))
    locked_at = Column(DateTime)
    override_allowed = Column(Boolean, default=False, nullable=False)

    unlocked_by_admin = Column(String(64), ForeignKey('admin_users.id'))
    unlocked_at = Column(DateTime)
    snapshot_reference = Column(String(100))
    notes = Column(Text)

    def __repr__(self):
        return f"<SeasonLock(season='{self.season_id}', locked={self.is_locked}, override={self.override_allowed})>"

class SeasonSnapshot(Base):
    __tablename__ = 'season_snapshots'

    id = Column(Integer, primary_key=True)
    season_id = Column(String(64), nullable=False, index=True)
    snapshot_type = Column(String(50), nullable=False)  # "season_lock", "manual"
    description = Column(Text)
    data = Column(Text, nullable=False)  # JSON
    created_by_admin = Column(String(64), ForeignKey('admin_users.id'))
    created_at = Column(DateTime, default=func.now())

    @property
    def reference(self) -> str:
        return f"snapshot:{self.season_id}:{self.id}"

    def __repr__(self):
        return f"<SeasonSnapshot(id={self.id}, season='{self.season_id}', type='{self.snapshot_type}')>"

class SeasonComputation(Base):
    """Timestamp of the last successful standings/rating computation per season"""
    __tablename__ = 'season_computations'

    season_id = Column(String(64), primary_key=True)
    last_computed_at = Column(DateTime, nullable=False)
    last_source = Column(String(100))  # "match:<id>" or "recalculation:<id>"

    def __repr__(self):
        return f"<SeasonComputation(season='{self.season_id}', at={self.last_computed_at})>"

# ============================================================================
# SQLAlchemy Event Listeners for write-once columns
# ============================================================================

def _reject_frozen_changes(target, allowed):
    state = inspect(target)
    changed = [
        prop.key for prop in state.mapper.column_attrs
        if prop.key not in allowed and state.attrs[prop.key].history.has_changes()
    ]
    if changed:
        raise StateError(
            f"{type(target).__name__} {target.id} is write-once; attempted to change {', '.join(sorted(changed))}"
        )

@event.listens_for(RatingParameters, "before_update")
def _freeze_rating_parameters(mapper, connection, target):
    """Published parameter versions never change; only is_active flips"""
    _reject_frozen_changes(target, RatingParameters.MUTABLE_FIELDS)

@event.listens_for(RatingHistory, "before_update")
def _freeze_rating_history(mapper, connection, target):
    """History rows only ever gain a superseded marker"""
    _reject_frozen_changes(target, RatingHistory.MUTABLE_FIELDS)
