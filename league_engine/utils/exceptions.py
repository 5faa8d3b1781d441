"""
Custom exceptions for the standings and rating engine with user-friendly error messages.

Hierarchy:
- ValidationError: malformed or duplicate input, rejected and never retried
- StateError: illegal transition or write against a locked season
- ConsistencyError: replay diverged from expectation during apply
- ConfigurationError: no usable configuration, raised before any write
"""

class LeagueEngineError(Exception):
    """Base exception for engine errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message

# ============================================================================
# Validation
# ============================================================================

class ValidationError(LeagueEngineError):
    """Raised when input is malformed or duplicated."""
    pass

class DuplicateResult(ValidationError):
    """Raised when a result row already exists for a match and entity."""
    def __init__(self, match_id: str, entity_id: str):
        super().__init__(
            f"Result already recorded for match {match_id}, entity {entity_id}",
            "This match result has already been recorded."
        )
        self.match_id = match_id
        self.entity_id = entity_id

class IncompleteMatch(ValidationError):
    """Raised when a match is not in a terminal state."""
    def __init__(self, match_id: str, status: str):
        super().__init__(
            f"Match {match_id} is not finalized (status={status})",
            "Only finished matches can be recorded."
        )
        self.match_id = match_id
        self.status = status

class DivisionMismatch(ValidationError):
    """Raised when a result belongs to another division or season."""
    def __init__(self, expected: str, actual: str):
        super().__init__(
            f"Result belongs to {actual}, expected {expected}",
            "Result does not belong to this division."
        )
        self.expected = expected
        self.actual = actual

# ============================================================================
# State
# ============================================================================

class StateError(LeagueEngineError):
    """Raised on illegal state transitions."""
    pass

class SeasonLockedError(StateError):
    """Raised when writing to a locked season without override."""
    def __init__(self, season_id: str):
        super().__init__(
            f"Season {season_id} is locked",
            "This season has been finalized and can no longer be changed."
        )
        self.season_id = season_id

class ConflictError(StateError):
    """Raised when a non-terminal recalculation already exists for a target."""
    def __init__(self, scope: str, target_id: str, existing_job_id: int):
        super().__init__(
            f"Recalculation {existing_job_id} is already open for {scope} {target_id}",
            "A recalculation for this target is already in progress."
        )
        self.scope = scope
        self.target_id = target_id
        self.existing_job_id = existing_job_id

class AdminPermissionError(LeagueEngineError):
    """Raised when an admin lacks the permission for an action."""
    def __init__(self, admin_id: str, permission: str):
        super().__init__(
            f"Admin {admin_id} lacks {permission} permission",
            "You do not have permission to do this."
        )
        self.admin_id = admin_id
        self.permission = permission

# ============================================================================
# Consistency and configuration
# ============================================================================

class ConsistencyError(LeagueEngineError):
    """Raised when a replay diverges from its preview during apply."""
    pass

class RecalculationTimeout(ConsistencyError):
    """Raised when a recalculation exceeds its time budget."""
    def __init__(self, job_id: int, timeout_seconds: float):
        super().__init__(
            f"Recalculation {job_id} exceeded {timeout_seconds}s",
            "The recalculation took too long and was cancelled."
        )
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds

class ConfigurationError(LeagueEngineError):
    """Raised when required configuration is missing or invalid."""
    pass
