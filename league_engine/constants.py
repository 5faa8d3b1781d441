"""
Engine-wide constants for the league standings and rating engine.

This module contains the scoring numbers and rating defaults used throughout
the codebase to improve maintainability and clarity.
"""

class ScoringConstants:
    """Constants for per-match point scoring."""

    # Every counted match earns participation points
    PARTICIPATION_POINTS = 1

    # One point per set won, capped
    MAX_SETS_WON_POINTS = 2

    WIN_BONUS_POINTS = 2

class StandingsConstants:
    """Constants for divisional standings."""

    # Best-K cap on counted results per entity
    DEFAULT_BEST_K = 6

class RatingDefaults:
    """Initial values for the first published rating parameters version."""

    INITIAL_RATING = 1500
    INITIAL_RD = 350
    INITIAL_VOLATILITY = 0.06

    K_FACTOR_NEW = 40
    K_FACTOR_ESTABLISHED = 20
    K_FACTOR_THRESHOLD = 30

    SINGLES_WEIGHT = 1.0
    DOUBLES_WEIGHT = 1.0
    ONE_SET_MATCH_WEIGHT = 0.5

    # Walkovers carry a dampened swing
    WALKOVER_WIN_IMPACT = 0.5
    WALKOVER_LOSS_IMPACT = 0.5

    PROVISIONAL_THRESHOLD = 10

    RATING_FLOOR = 100
    MIN_RD = 50
    RD_DECAY = 0.9

class RecalculationConstants:
    """Constants for recalculation jobs."""

    # Entries kept in a changes preview before truncating the listing
    MAX_PREVIEW_ENTRIES = 5000
