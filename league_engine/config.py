import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Engine configuration settings"""

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///league_engine.db')
    DATABASE_ECHO = os.getenv('DATABASE_ECHO', 'False').lower() == 'true'

    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'

    # Admin with every permission regardless of the admin_users table
    OWNER_ADMIN_ID = os.getenv('OWNER_ADMIN_ID', '')

    # Standings settings
    BEST_K = int(os.getenv('BEST_K', 6))
    STANDINGS_SELECTION_POLICY = os.getenv('STANDINGS_SELECTION_POLICY', 'first_k_chronological')

    # Recalculation settings
    RECALC_TIMEOUT_SECONDS = float(os.getenv('RECALC_TIMEOUT_SECONDS', 300))
    RECALC_MAX_WORKERS = int(os.getenv('RECALC_MAX_WORKERS', 4))

    # Locking settings
    REDIS_URL = os.getenv('REDIS_URL', '')
    LOCK_TIMEOUT_SECONDS = int(os.getenv('LOCK_TIMEOUT_SECONDS', 30))
    # Redis lock expiry; must outlast the longest hold, a recalculation apply
    LOCK_LEASE_SECONDS = float(os.getenv('LOCK_LEASE_SECONDS', RECALC_TIMEOUT_SECONDS + LOCK_TIMEOUT_SECONDS))
    PIPELINE_MAX_RETRIES = int(os.getenv('PIPELINE_MAX_RETRIES', 3))

    # Logging settings
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    LOG_TO_FILE = os.getenv('LOG_TO_FILE', 'True').lower() == 'true'

    @classmethod
    def validate(cls):
        """Validate that configuration values are usable"""
        from league_engine.utils.exceptions import ConfigurationError
        from league_engine.utils.selection_policies import SelectionPolicy

        if not cls.DATABASE_URL:
            raise ConfigurationError("DATABASE_URL is required")
        if cls.BEST_K < 1:
            raise ConfigurationError(f"BEST_K must be at least 1, got {cls.BEST_K}")
        if cls.RECALC_TIMEOUT_SECONDS <= 0:
            raise ConfigurationError("RECALC_TIMEOUT_SECONDS must be positive")
        if cls.RECALC_MAX_WORKERS < 1:
            raise ConfigurationError("RECALC_MAX_WORKERS must be at least 1")
        if cls.LOCK_LEASE_SECONDS < cls.RECALC_TIMEOUT_SECONDS:
            raise ConfigurationError(
                f"LOCK_LEASE_SECONDS ({cls.LOCK_LEASE_SECONDS}) must cover RECALC_TIMEOUT_SECONDS "
                f"({cls.RECALC_TIMEOUT_SECONDS})"
            )
        try:
            SelectionPolicy(cls.STANDINGS_SELECTION_POLICY)
        except ValueError:
            raise ConfigurationError(
                f"Unknown STANDINGS_SELECTION_POLICY '{cls.STANDINGS_SELECTION_POLICY}'"
            )
